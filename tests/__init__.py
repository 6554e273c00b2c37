"""
ckb-snapshot Test Suite.

This package contains:
- unit/: Unit tests (no node, no network, no systemd)
- integration/: Full lifecycle runs against fakes and a temporary directory
"""
