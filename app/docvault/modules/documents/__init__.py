"""
Document custody module.

- Files are hashed (SHA-256 of the plaintext) and sealed with per-file keys
  wrapped under the master key
- Sealed bytes go to content-addressed storage; id and hash are anchored on the ledger
- Versions are immutable; new content is always a new version number
"""
