"""
Detached signatures over checksum files.

Two backends are supported:

1. **GPG** (default): shells out to ``gpg --detach-sign`` with the key
   already provisioned in the host keyring. Verification parses gpg's
   machine-readable ``--status-fd`` output; the signer identity is the
   primary key fingerprint plus user id.

2. **Ed25519** (PyNaCl): raw 64-byte detached signature. The signer
   identity is the hex-encoded verify key. Useful on hosts without a
   GPG keyring and for reproducible tests.

Key generation and distribution are out of scope: both backends only use
keys that already exist.

Invariants:
    - The signature always covers the .sha256 file, never the archive
    - Signature files are written next to the signed file with ".sig" appended
    - Verification reports validity and identity separately; callers decide
      whether the identity is trusted
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import nacl.signing
from nacl.exceptions import BadSignatureError

from ..config import SigningBackend, SigningConfig
from ..errors import SigningError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignatureCheck:
    """Outcome of a signature verification.

    Attributes:
        valid: Whether the signature verifies against the signed file
        identity: Signer identity string (fingerprint and/or user id)
        detail: Tool output or reason, for diagnostics
    """

    valid: bool
    identity: str = ""
    detail: str = ""


def signature_path(signed_path: str | Path) -> Path:
    """Path of the detached signature for a signed file."""
    return Path(f"{signed_path}.sig")


def _normalize_identity(value: str) -> str:
    return "".join(value.split()).upper()


def identity_matches(identity: str, expected: str) -> bool:
    """Check a signer identity against an allow-listed expectation.

    Matching is case-insensitive containment with whitespace removed, so a
    fingerprint printed in groups of four matches its compact form.
    """
    expected_norm = _normalize_identity(expected)
    return bool(expected_norm) and expected_norm in _normalize_identity(identity)


@runtime_checkable
class Signer(Protocol):
    """Protocol for detached-signature backends."""

    @abstractmethod
    async def sign(self, path: str | Path) -> Path:
        """Produce a detached signature for path.

        Returns:
            Path of the written signature file

        Raises:
            SigningError: If signing fails
        """
        ...

    @abstractmethod
    async def verify(self, sig_path: str | Path, signed_path: str | Path) -> SignatureCheck:
        """Verify a detached signature.

        Returns:
            SignatureCheck with validity and signer identity
        """
        ...


def parse_gpg_status(status: str) -> SignatureCheck:
    """Interpret ``gpg --status-fd`` output from a --verify run."""
    good_uid = ""
    fingerprint = ""
    failure = ""
    for line in status.splitlines():
        if not line.startswith("[GNUPG:] "):
            continue
        parts = line[len("[GNUPG:] "):].split(" ", 2)
        keyword = parts[0]
        if keyword == "GOODSIG" and len(parts) >= 2:
            good_uid = parts[2] if len(parts) > 2 else parts[1]
        elif keyword == "VALIDSIG" and len(parts) >= 2:
            fingerprint = parts[1]
        elif keyword in ("BADSIG", "ERRSIG", "NO_PUBKEY", "EXPKEYSIG", "REVKEYSIG"):
            failure = failure or keyword

    if failure or not (good_uid and fingerprint):
        return SignatureCheck(valid=False, identity=fingerprint, detail=failure or "no GOODSIG")
    return SignatureCheck(valid=True, identity=f"{fingerprint} {good_uid}", detail="GOODSIG")


class GpgSigner:
    """Signer backed by the gpg command line tool.

    Attributes:
        key: Key id or email for --local-user; empty uses gpg's default key
        binary: gpg executable
        home: Optional GNUPGHOME
    """

    def __init__(self, key: str = "", binary: str = "gpg", home: Optional[str] = None) -> None:
        self.key = key
        self.binary = binary
        self.home = home

    def _base_command(self) -> list[str]:
        cmd = [self.binary, "--batch", "--yes"]
        if self.home:
            cmd += ["--homedir", self.home]
        return cmd

    async def _run(self, cmd: list[str]) -> tuple[int, str, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SigningError(f"Cannot run {self.binary}: {e}", key=self.key or None)
        stdout, stderr = await proc.communicate()
        return (
            proc.returncode or 0,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def sign(self, path: str | Path) -> Path:
        sig_path = signature_path(path)
        cmd = self._base_command()
        if self.key:
            cmd += ["--local-user", self.key]
        cmd += ["--output", str(sig_path), "--detach-sign", str(path)]

        returncode, _, stderr = await self._run(cmd)
        if returncode != 0:
            raise SigningError(
                f"gpg --detach-sign failed ({returncode}): {stderr.strip()}",
                key=self.key or None,
            )
        logger.info("Signed checksum with GPG", extra={"key": self.key or "default"})
        return sig_path

    async def verify(self, sig_path: str | Path, signed_path: str | Path) -> SignatureCheck:
        cmd = self._base_command() + ["--status-fd", "1", "--verify", str(sig_path), str(signed_path)]
        returncode, stdout, stderr = await self._run(cmd)
        check = parse_gpg_status(stdout)
        if returncode != 0 and check.valid:
            return SignatureCheck(valid=False, identity=check.identity, detail=stderr.strip())
        return check


class Ed25519Signer:
    """Signer using an Ed25519 key via PyNaCl.

    Attributes:
        verify_key_hex: Hex-encoded public key, also the signer identity
    """

    def __init__(
        self,
        signing_key_hex: Optional[str] = None,
        verify_key_hex: Optional[str] = None,
    ) -> None:
        self._signing_key: Optional[nacl.signing.SigningKey] = None
        if signing_key_hex:
            try:
                self._signing_key = nacl.signing.SigningKey(bytes.fromhex(signing_key_hex.strip()))
            except ValueError as e:
                raise SigningError(f"Invalid Ed25519 signing key: {e}")
        if verify_key_hex:
            self.verify_key_hex = verify_key_hex.strip().lower()
        elif self._signing_key is not None:
            self.verify_key_hex = self._signing_key.verify_key.encode().hex()
        else:
            self.verify_key_hex = ""

    @classmethod
    def from_files(
        cls,
        key_file: Optional[str] = None,
        public_key: Optional[str] = None,
    ) -> Ed25519Signer:
        """Build from a key file holding the hex seed and/or a hex public key."""
        seed = None
        if key_file:
            try:
                seed = Path(key_file).read_text(encoding="utf-8").strip()
            except OSError as e:
                raise SigningError(f"Cannot read signing key file {key_file}: {e}")
        return cls(signing_key_hex=seed, verify_key_hex=public_key)

    async def sign(self, path: str | Path) -> Path:
        if self._signing_key is None:
            raise SigningError("No Ed25519 signing key configured")
        try:
            data = Path(path).read_bytes()
            signature = self._signing_key.sign(data).signature
            sig_path = signature_path(path)
            sig_path.write_bytes(signature)
        except OSError as e:
            raise SigningError(f"Cannot sign {path}: {e}")
        logger.info("Signed checksum with Ed25519", extra={"identity": self.verify_key_hex})
        return sig_path

    async def verify(self, sig_path: str | Path, signed_path: str | Path) -> SignatureCheck:
        if not self.verify_key_hex:
            raise SigningError("No Ed25519 public key configured for verification")
        data = Path(signed_path).read_bytes()
        signature = Path(sig_path).read_bytes()
        try:
            verify_key = nacl.signing.VerifyKey(bytes.fromhex(self.verify_key_hex))
            verify_key.verify(data, signature)
        except (BadSignatureError, ValueError) as e:
            return SignatureCheck(valid=False, identity=self.verify_key_hex, detail=str(e))
        return SignatureCheck(valid=True, identity=self.verify_key_hex, detail="ed25519 ok")


def create_signer(config: SigningConfig) -> Signer:
    """Factory creating the configured signer.

    Raises:
        ValueError: If the backend is not supported
    """
    if config.backend == SigningBackend.GPG:
        return GpgSigner(key=config.gpg_key, binary=config.gpg_binary, home=config.gpg_home)
    elif config.backend == SigningBackend.ED25519:
        return Ed25519Signer.from_files(config.key_file, config.public_key)
    else:
        raise ValueError(f"Unsupported signing backend: {config.backend}")
