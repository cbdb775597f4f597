"""
Admin Routes - ledger grants, corrections, audits and reconciliation.

All endpoints require an admin principal.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from fable_ledger.api.dependencies import require_admin
from fable_ledger.api.routes import ledger_entry_item
from fable_ledger.db.session import get_db
from fable_ledger.exceptions import AccountNotFoundError
from fable_ledger.models.api import (
    AdminCorrectionRequest,
    AdminGrantRequest,
    AdminLedgerEntryResponse,
    LedgerListResponse,
    LedgerReason,
    ReconcileResponse,
)
from fable_ledger.models.domain import LedgerEntryIntent, Principal
from fable_ledger.observability.logging import get_logger
from fable_ledger.services.ledger import LedgerStore

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"])


def _admin_external_ref(kind: str, idempotency_key: str | None) -> str | None:
    """Namespace an admin idempotency key by operation kind."""
    return f"{kind}:{idempotency_key}" if idempotency_key else None


@router.post("/credits/grant", response_model=AdminLedgerEntryResponse)
async def grant_credits(
    request: AdminGrantRequest,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
) -> AdminLedgerEntryResponse:
    """Grant credits to an existing account."""
    store = LedgerStore(db)
    result = await store.append(
        LedgerEntryIntent(
            user_id=request.user_id,
            amount=request.amount,
            reason=LedgerReason.ADMIN_GRANT,
            description=request.description,
            external_ref=_admin_external_ref("admin-grant", request.idempotency_key),
        )
    )

    logger.info(
        "admin_credits_granted",
        admin_id=admin.user_id,
        user_id=request.user_id,
        amount=request.amount,
        created=result.created,
    )

    return AdminLedgerEntryResponse(
        created=result.created,
        entry=ledger_entry_item(result.entry),
        new_balance=result.balance,
    )


@router.post("/credits/correction", response_model=AdminLedgerEntryResponse)
async def correct_credits(
    request: AdminCorrectionRequest,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
) -> AdminLedgerEntryResponse:
    """Apply a signed balance correction as a new ledger entry."""
    store = LedgerStore(db)
    result = await store.append(
        LedgerEntryIntent(
            user_id=request.user_id,
            amount=request.amount,
            reason=LedgerReason.ADMIN_CORRECTION,
            description=request.description,
            external_ref=_admin_external_ref("admin-correction", request.idempotency_key),
        )
    )

    logger.info(
        "admin_credits_corrected",
        admin_id=admin.user_id,
        user_id=request.user_id,
        amount=request.amount,
        created=result.created,
    )

    return AdminLedgerEntryResponse(
        created=result.created,
        entry=ledger_entry_item(result.entry),
        new_balance=result.balance,
    )


@router.get("/accounts/{user_id}/ledger", response_model=LedgerListResponse)
async def get_account_ledger(
    user_id: str,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
) -> LedgerListResponse:
    """Audit an account's ledger, including the ledger sum."""
    store = LedgerStore(db)
    if not await store.projector.account_exists(user_id):
        raise AccountNotFoundError(user_id)

    entries, total = await store.list_for_user(user_id, limit=limit, offset=offset)
    ledger_sum = await store.sum_for_user(user_id)

    return LedgerListResponse(
        user_id=user_id,
        entries=[ledger_entry_item(e) for e in entries],
        total_count=total,
        has_more=offset + len(entries) < total,
        ledger_sum=ledger_sum,
    )


@router.post("/accounts/{user_id}/reconcile", response_model=ReconcileResponse)
async def reconcile_account(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
) -> ReconcileResponse:
    """Recompute an account's cached balance from its ledger."""
    store = LedgerStore(db)
    reconciliation = await store.projector.recompute(user_id)

    logger.info(
        "admin_account_reconciled",
        admin_id=admin.user_id,
        user_id=user_id,
        drift=reconciliation.drift,
    )

    return ReconcileResponse(
        user_id=reconciliation.user_id,
        previous_balance=reconciliation.previous_balance,
        recomputed_balance=reconciliation.recomputed_balance,
        drift=reconciliation.drift,
    )
