"""
Internal CAR v1 engine: varint-framed DAG-CBOR header plus CID-keyed block
records. Used by ``atrepo.export`` for repository export; not a public API.
"""

from atrepo._car.spec import (
    BlockReadError,
    CarDecodeError,
    CarError,
    WriteError,
)
from atrepo._car.writer import CarWriter
from atrepo._car.reader import CarFile, CarReader
