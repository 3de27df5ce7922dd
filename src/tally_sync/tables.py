"""
Table Registry.

Maps each synchronizable table to the source collection it is exported
from and the XML element that marks one record in the export.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TableSpec:
    """How one table is extracted and recognized."""

    name: str
    collection: str
    element: str
    transactional: bool = False


TABLES: dict[str, TableSpec] = {
    spec.name: spec
    for spec in (
        TableSpec("Ledgers", "Ledger", "LEDGER"),
        TableSpec("Groups", "Group", "GROUP"),
        TableSpec("Vouchers", "Voucher", "VOUCHER", transactional=True),
        TableSpec("StockItems", "StockItem", "STOCKITEM"),
        TableSpec("StockGroups", "StockGroup", "STOCKGROUP"),
        TableSpec("Units", "Unit", "UNIT"),
        TableSpec("CostCentres", "CostCentre", "COSTCENTRE"),
        TableSpec("Godowns", "Godown", "GODOWN"),
        TableSpec("Currencies", "Currency", "CURRENCY"),
        TableSpec("VoucherTypes", "VoucherType", "VOUCHERTYPE"),
    )
}

# Masters before transactions so vouchers never reference unsynced ledgers
DEFAULT_TABLES: tuple[str, ...] = (
    "Groups",
    "Ledgers",
    "Currencies",
    "Units",
    "StockGroups",
    "StockItems",
    "Godowns",
    "CostCentres",
    "VoucherTypes",
    "Vouchers",
)


def get_table(name: str) -> TableSpec | None:
    """Look up a table by name."""
    return TABLES.get(name)
