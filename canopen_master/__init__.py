"""CANopen master: object dictionaries, EDS parsing, object storage, SDO/PDO, NMT, EMCY and SYNC layers."""

__version__ = "0.1.0"

__all__ = [
    "eds",
    "emcy",
    "exceptions",
    "frames",
    "layer",
    "node",
    "objdict",
    "pdo",
    "sdo",
    "storage",
    "sync",
    "timer",
]