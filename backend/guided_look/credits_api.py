import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from . import auth as auth_utils
from .auth import CurrentUser
from .credits.device_guard import DeviceRewardGuard, DeviceRewardStore, derive_device_fingerprint
from .credits.ledger import CreditLedger
from .credits.stores import SqlDeviceRewardStore
from .db import get_db
from .schemas import CreditStatusOut, RewardClaimIn, RewardClaimOut
from .settings import settings
from .workflows import get_ledger


logger = logging.getLogger("guided-look")

router = APIRouter(prefix="/api/credits", tags=["credits"])


async def get_device_store(db: AsyncSession = Depends(get_db)) -> DeviceRewardStore:
    return SqlDeviceRewardStore(db)


def resolve_device_id(body: RewardClaimIn, request: Request) -> str:
    """Derive the device fingerprint from the reported traits and request headers.

    The client's ``deviceId`` is ignored; the id depends only on the traits,
    the headers and ``fingerprint_salt``.
    """
    traits = body.traits()
    traits["user_agent"] = traits.get("user_agent") or request.headers.get("user-agent")
    traits["accept_language"] = traits.get("accept_language") or request.headers.get("accept-language")
    return derive_device_fingerprint(traits, salt=settings.fingerprint_salt)


@router.get("", response_model=CreditStatusOut)
async def get_credits(ledger: CreditLedger = Depends(get_ledger)) -> CreditStatusOut:
    """Credit usage of the caller for the current billing month."""
    return CreditStatusOut.from_status(await ledger.get_status())


@router.post("/rewards/claim", response_model=RewardClaimOut)
async def claim_reward(
    body: RewardClaimIn,
    request: Request,
    current_user: CurrentUser = Depends(auth_utils.get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
    device_store: DeviceRewardStore = Depends(get_device_store),
) -> RewardClaimOut:
    """Grant the share reward, capped per device rather than per account.

    Returns 429 once the device used up its claims for the month, no
    matter which account asks.
    """
    device_id = resolve_device_id(body, request)
    guard = DeviceRewardGuard(device_store, device_id, max_per_period=settings.max_rewards_per_device)
    decision = await guard.can_claim_reward()
    if not decision.allowed:
        logger.info("Reward claim refused for device %s: %s", device_id[:12], decision.reason)
        raise HTTPException(status_code=429, detail=decision.reason or "device_limit_reached")
    status = await ledger.grant_bonus(settings.share_reward_credits)
    await guard.record_claim(current_user.uid)
    return RewardClaimOut(
        granted=True,
        credits_granted=settings.share_reward_credits,
        device_id=device_id,
        credits=CreditStatusOut.from_status(status),
    )


@router.post("/reset", response_model=CreditStatusOut)
async def reset_credits(
    _admin: CurrentUser = Depends(auth_utils.require_admin),
    ledger: CreditLedger = Depends(get_ledger),
) -> CreditStatusOut:
    """Zero the caller's usage for the current period."""
    return CreditStatusOut.from_status(await ledger.reset())
