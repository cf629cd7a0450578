"""
VaultDAO Exports

Proposals, activity and transactions from one consistent snapshot, as CSV
or JSON.
"""

from .assembler import (
    ExportAssembler,
    ExportDataType,
    ExportFile,
    ExportFormat,
    RowSets,
)

__all__ = [
    "ExportAssembler",
    "ExportDataType",
    "ExportFile",
    "ExportFormat",
    "RowSets",
]
