"""
Snapshot verifier: check a downloaded archive before trusting it.

Usage:
    ckb-snapshot-verify <snapshot.tar.zst> [expected-fingerprint]
    ckb-snapshot-verify <snapshot.tar.zst> --backend ed25519 --public-key <hex>

The checksum file <archive>.sha256 must sit next to the archive. The
signature <archive>.sha256.sig is optional: without it the archive is
trusted on its checksum alone.

States:
    checksum-pending -> checksum-ok -> signature-skipped
                                   -> signature-ok
    failures: checksum-failed, signature-invalid,
              signature-identity-mismatch

Invariants:
    - The signature is never examined unless the checksum passed
    - A present but wrong signature is a failure, never a skip
    - With an expected identity, a valid signature from anyone else fails

How to change safely:
    - Keep the [  OK  ] / [FAILED] line format; operators grep for it
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from ..attest.digest import verify_file_checksum
from ..attest.signing import (
    Ed25519Signer,
    GpgSigner,
    Signer,
    identity_matches,
    signature_path,
)
from ..errors import ChecksumMismatchError, SigningError

logger = logging.getLogger(__name__)

EXTRACT_TARGET = "~/.ckb/data/"


class VerifyState(Enum):
    CHECKSUM_PENDING = "checksum-pending"
    CHECKSUM_OK = "checksum-ok"
    SIGNATURE_SKIPPED = "signature-skipped"
    SIGNATURE_OK = "signature-ok"
    CHECKSUM_FAILED = "checksum-failed"
    SIGNATURE_INVALID = "signature-invalid"
    IDENTITY_MISMATCH = "signature-identity-mismatch"

    @property
    def success(self) -> bool:
        return self in (VerifyState.SIGNATURE_SKIPPED, VerifyState.SIGNATURE_OK)


@dataclass
class VerifyReport:
    """Result of verifying one archive.

    Attributes:
        archive: Archive path
        state: Terminal state reached
        identity: Signer identity, when a signature was checked
        message: Human-readable reason for the terminal state
        history: Every state visited, in order
        lines: Console lines as (tag, text); tag is "log", "ok" or "fail"
    """

    archive: str
    state: VerifyState = VerifyState.CHECKSUM_PENDING
    identity: str = ""
    message: str = ""
    history: list[VerifyState] = field(default_factory=lambda: [VerifyState.CHECKSUM_PENDING])
    lines: list[tuple[str, str]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state.success

    def _enter(self, state: VerifyState, message: str = "") -> VerifyReport:
        self.state = state
        self.history.append(state)
        if message:
            self.message = message
        return self

    def _say(self, tag: str, text: str) -> None:
        self.lines.append((tag, text))


class Verifier:
    """Checks an archive against its checksum and optional signature.

    Example:
        >>> report = await Verifier(GpgSigner()).verify("snap.tar.zst", "ABCD1234")
        >>> report.state
        <VerifyState.SIGNATURE_OK: 'signature-ok'>
    """

    def __init__(self, signer: Signer) -> None:
        self.signer = signer

    async def verify(
        self, archive_path: str | Path, expected_identity: Optional[str] = None
    ) -> VerifyReport:
        archive = Path(archive_path)
        report = VerifyReport(archive=str(archive))
        checksum = Path(f"{archive}.sha256")
        sig = signature_path(checksum)

        if not archive.is_file():
            report._say("fail", f"File not found: {archive}")
            return report._enter(VerifyState.CHECKSUM_FAILED, f"File not found: {archive}")
        if not checksum.is_file():
            report._say("fail", f"Missing checksum file: {checksum}")
            return report._enter(VerifyState.CHECKSUM_FAILED, f"Missing checksum file: {checksum}")

        report._say("log", "Verifying SHA256 checksum...")
        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, verify_file_checksum, archive, checksum)
        except ChecksumMismatchError as e:
            text = "Checksum mismatch: file corrupted or tampered"
            report._say("fail", text)
            detail = f"expected {e.details.get('expected')}, got {e.details.get('actual')}"
            return report._enter(VerifyState.CHECKSUM_FAILED, f"{text} ({detail})")
        except (ValueError, OSError) as e:
            report._say("fail", f"Unreadable checksum: {e}")
            return report._enter(VerifyState.CHECKSUM_FAILED, str(e))
        report._say("ok", "Checksum matches")
        report._enter(VerifyState.CHECKSUM_OK)

        if not sig.exists():
            text = "No .sig file found, skipping signature verification (checksum only)"
            report._say("log", text)
            return self._verified(report._enter(VerifyState.SIGNATURE_SKIPPED, text))

        report._say("log", "Verifying signature...")
        try:
            check = await self.signer.verify(sig, checksum)
        except (SigningError, OSError) as e:
            report._say("fail", f"Signature could not be checked: {e}")
            return report._enter(VerifyState.SIGNATURE_INVALID, str(e))

        report.identity = check.identity
        if not check.valid:
            report._say("fail", "Signature invalid")
            return report._enter(VerifyState.SIGNATURE_INVALID, check.detail or "signature invalid")
        report._say("ok", "Signature valid")

        if expected_identity:
            if not identity_matches(check.identity, expected_identity):
                text = f"Signed by UNKNOWN key, expected {expected_identity}"
                report._say("fail", text)
                return report._enter(VerifyState.IDENTITY_MISMATCH, text)
            report._say("ok", f"Signed by expected key: {expected_identity}")

        return self._verified(report._enter(VerifyState.SIGNATURE_OK, "signature ok"))

    @staticmethod
    def _verified(report: VerifyReport) -> VerifyReport:
        report._say("ok", f"Snapshot verified: {report.archive}")
        report._say(
            "log",
            f"Safe to extract with: tar --use-compress-program=zstd -xf "
            f"'{report.archive}' -C {EXTRACT_TARGET}",
        )
        return report


def print_report(report: VerifyReport) -> None:
    """Print report lines in the operator-facing console format."""
    for tag, text in report.lines:
        if tag == "ok":
            print(f"[  OK  ] {text}")
        elif tag == "fail":
            print(f"[FAILED] {text}", file=sys.stderr)
        else:
            print(f"[verify] {text}")


def build_signer(backend: str, public_key: Optional[str], gpg_binary: str) -> Signer:
    if backend == "ed25519":
        return Ed25519Signer(verify_key_hex=public_key)
    return GpgSigner(binary=gpg_binary)


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point for the verifier."""
    parser = argparse.ArgumentParser(
        description="Verify a CKB snapshot archive before extracting it"
    )
    parser.add_argument("archive", help="Path to the .tar.zst archive")
    parser.add_argument(
        "expected", nargs="?", default=None, help="Expected signer fingerprint or public key"
    )
    parser.add_argument(
        "--backend", choices=["gpg", "ed25519"], default="gpg", help="Signature backend"
    )
    parser.add_argument("--public-key", help="Ed25519 public key (hex)")
    parser.add_argument("--gpg-binary", default="gpg", help="gpg executable")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    if args.backend == "ed25519" and not args.public_key:
        parser.error("--public-key is required with --backend ed25519")

    signer = build_signer(args.backend, args.public_key, args.gpg_binary)
    report = asyncio.run(Verifier(signer).verify(args.archive, args.expected))
    print_report(report)
    logger.debug("Verification finished", extra={"state": report.state.value})

    sys.exit(0 if report.success else 1)


if __name__ == "__main__":
    main()
