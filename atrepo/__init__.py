"""
atrepo: record addressing and repository export for an AT Protocol data server.

Architecture:
    Addressing:  at://<did-or-handle>/<collection>/<record-key>?<query>#<fragment>
    Export:      CAR v1 = varint-framed DAG-CBOR header + (CID, bytes) block records
    Storage:     ~/.atrepo/blocks/<cid> + index.json (local block store)
"""

__version__ = "0.1.0"

# Identifier constants
AT_URI_SCHEME = "at:"
AT_URI_PREFIX = "at://"
# Segment inserted when a record key is set on a path with no collection
RECORD_KEY_PLACEHOLDER = "undefined"

# Archive constants
CAR_VERSION = 1
CAR_MAX_HEADER_SIZE = 1024 * 1024  # 1 MB
CAR_MAX_RECORD_SIZE = 8 * 1024 * 1024  # 8 MB, bounds reader allocations

# Block store constants
STORE_DEFAULT_DIR = ".atrepo"
STORE_MAX_BLOCK_SIZE = 2 * 1024 * 1024  # 2 MB
