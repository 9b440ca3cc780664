"""Credit balance, history, packs and pack checkout."""

from fastapi import APIRouter, Depends

from app.api.deps import Services, get_current_user, get_services
from app.catalog import CATALOG
from app.models.contracts import (
    AuthenticatedUser,
    BalanceResponse,
    CheckoutSession,
    CreditHistoryResponse,
    CreditPackResponse,
    ErrorResponse,
    PurchaseCreditsRequest,
)

router = APIRouter(tags=["credits"])


@router.get("/credits", response_model=BalanceResponse)
async def get_balance(
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> BalanceResponse:
    return BalanceResponse(balance=(await services.ledger.get_balance(user.id)).unwrap())


@router.get("/credits/history", response_model=CreditHistoryResponse)
async def get_history(
    limit: int = 50,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> CreditHistoryResponse:
    transactions = (await services.ledger.get_history(user.id, limit)).unwrap()
    return CreditHistoryResponse(transactions=transactions)


@router.get("/credits/packs", response_model=list[CreditPackResponse])
async def list_packs() -> list[CreditPackResponse]:
    return [
        CreditPackResponse(
            id=pack.id,
            credits=pack.credits,
            price_cents=pack.price_cents,
            price_display=pack.price_display,
            popular=pack.popular,
        )
        for pack in CATALOG.packs
    ]


@router.post(
    "/credits/checkout",
    response_model=CheckoutSession,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)
async def create_checkout(
    body: PurchaseCreditsRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> CheckoutSession:
    result = await services.credit_checkout.create_credits_checkout(user.id, user.email, body.pack_id)
    return result.unwrap()
