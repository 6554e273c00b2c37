"""
Operator tools for CKB snapshots.

Tools:
    - verify: Check a downloaded snapshot's checksum and signature
"""
