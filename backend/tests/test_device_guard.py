from __future__ import annotations

from datetime import datetime, timezone

import pytest

pytest.importorskip("pydantic_settings")

from guided_look.credits.device_guard import (
    DeviceRewardGuard,
    InMemoryDeviceRewardStore,
    RewardLimitReached,
    derive_device_fingerprint,
    is_device_id,
)


class FakeClock:
    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment


TRAITS = {
    "user_agent": "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0)",
    "accept_language": "es-AR,es;q=0.9",
    "platform": "iPhone",
    "timezone": "America/Argentina/Buenos_Aires",
    "screen": "390x844",
}


def test_fingerprint_is_stable_and_hex() -> None:
    first = derive_device_fingerprint(TRAITS, salt="pepper")
    second = derive_device_fingerprint(dict(reversed(list(TRAITS.items()))), salt="pepper")

    assert first == second
    assert is_device_id(first)


def test_fingerprint_ignores_whitespace_and_case() -> None:
    noisy = {**TRAITS, "platform": "  IPHONE "}

    assert derive_device_fingerprint(noisy) == derive_device_fingerprint(TRAITS)


def test_fingerprint_changes_with_traits_and_salt() -> None:
    base = derive_device_fingerprint(TRAITS)

    assert derive_device_fingerprint({**TRAITS, "screen": "1920x1080"}) != base
    assert derive_device_fingerprint(TRAITS, salt="other") != base


def test_is_device_id_rejects_malformed_values() -> None:
    assert not is_device_id(None)
    assert not is_device_id("abc")
    assert not is_device_id("Z" * 64)


@pytest.mark.asyncio
async def test_third_claim_is_refused_regardless_of_account() -> None:
    store = InMemoryDeviceRewardStore()
    guard = DeviceRewardGuard(store, "d" * 64, clock=FakeClock(datetime(2025, 5, 3, tzinfo=timezone.utc)))

    assert (await guard.can_claim_reward()).allowed is True
    await guard.record_claim("account-a")
    await guard.record_claim("account-b")

    decision = await guard.can_claim_reward()
    assert decision.allowed is False
    assert decision.reason == "device_limit_reached"
    assert decision.claims_this_period == 2

    with pytest.raises(RewardLimitReached):
        await guard.record_claim("account-c")
    assert store.entries["d" * 64].rewards_claimed == 2


@pytest.mark.asyncio
async def test_linked_accounts_are_recorded_once() -> None:
    store = InMemoryDeviceRewardStore()
    guard = DeviceRewardGuard(store, "e" * 64, max_per_period=5)

    await guard.record_claim("account-a")
    await guard.record_claim("account-a")
    entry = await guard.record_claim("account-b")

    assert entry.linked_account_ids == ("account-a", "account-b")
    assert entry.rewards_claimed == 3


@pytest.mark.asyncio
async def test_new_period_resets_claims_but_keeps_linked_accounts() -> None:
    store = InMemoryDeviceRewardStore()
    clock = FakeClock(datetime(2025, 5, 30, tzinfo=timezone.utc))
    guard = DeviceRewardGuard(store, "f" * 64, clock=clock)
    await guard.record_claim("account-a")
    await guard.record_claim("account-b")

    clock.moment = datetime(2025, 6, 1, tzinfo=timezone.utc)

    decision = await guard.can_claim_reward()
    assert decision.allowed is True
    assert decision.claims_this_period == 0
    entry = await guard.record_claim()
    assert entry.period_key == "2025-06"
    assert entry.rewards_claimed == 1
    assert entry.linked_account_ids == ("account-a", "account-b")
