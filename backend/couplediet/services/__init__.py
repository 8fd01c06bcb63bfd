from .couple_store import CoupleStore, StoreConflict, StoreUnavailable
from .couple_status import CoupleStatusView, load_couple_status, project_status
from .pairing import PairingEngine, PairingResult
from .partner_reconcile import reconcile_partner_references

__all__ = [
    "CoupleStore",
    "StoreConflict",
    "StoreUnavailable",
    "CoupleStatusView",
    "load_couple_status",
    "project_status",
    "PairingEngine",
    "PairingResult",
    "reconcile_partner_references",
]
