from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import update
from sqlalchemy.future import select

from models.credit_transaction import CreditTransaction
from models.generated_asset import GeneratedAsset
from models.generation_lock import GenerationLock
from services.credits import earn_credits, freeze_credits, get_or_create_credit_account, spend_credits
from services.errors import GenerationFailedError, InsufficientFundsError, LockHeldError
from services.generation import get_generation_cost, recover_stalled_generations, run_generation
from services.generation_lock import acquire_generation_lock
from services.generation_provider import GenerationProviderError, ProviderTaskStatus


USER_ID = "studio-user"


class FakeProvider:
    def __init__(self, states=None, task_id="task-1", create_error=None, result_url="https://cdn.test/out.png"):
        self.states = list(states) if states is not None else ["success"]
        self.task_id = task_id
        self.create_error = create_error
        self.result_url = result_url
        self.created = []
        self.polled = 0

    async def create_task(self, **kwargs):
        self.created.append(kwargs)
        if self.create_error:
            raise self.create_error
        return self.task_id

    async def get_task_status(self, task_id):
        self.polled += 1
        state = self.states.pop(0) if self.states else "processing"
        return ProviderTaskStatus(
            task_id=task_id,
            state=state,
            result_urls=[self.result_url] if state == "success" and self.result_url else [],
            error="content policy violation" if state == "fail" else None,
        )


@pytest.fixture
def studio(session_maker):
    with (
        patch("services.generation.async_session_maker", session_maker),
        patch("services.generation.settings.GENERATION_POLL_INTERVAL_SECONDS", 0),
    ):
        yield session_maker


async def _fund(session_maker, amount: int) -> None:
    async with session_maker() as db:
        await earn_credits(
            USER_ID, db, amount=amount, source="bonus", description="seed", reference_id=f"seed_{amount}"
        )


async def _state(session_maker):
    async with session_maker() as db:
        account = await get_or_create_credit_account(USER_ID, db)
        entries = await db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == USER_ID)
            .order_by(CreditTransaction.created_at.asc())
        )
        locks = await db.execute(select(GenerationLock))
        assets = await db.execute(select(GeneratedAsset))
        return account, list(entries.scalars().all()), list(locks.scalars().all()), list(assets.scalars().all())


def test_generation_cost_table():
    assert get_generation_cost("image", "nano-banana") == 5
    assert get_generation_cost("image", "flux-kontext-max") == 10
    assert get_generation_cost("video", "sora-2") == 20
    with pytest.raises(ValueError):
        get_generation_cost("image", "sora-2")
    with pytest.raises(ValueError):
        get_generation_cost("audio", "nano-banana")


@pytest.mark.asyncio
async def test_successful_generation_charges_from_hold_and_releases_lock(studio, make_user):
    await make_user(USER_ID)
    await _fund(studio, 20)
    provider = FakeProvider(states=["processing", "success"], task_id="task-ok")

    outcome = await run_generation(
        USER_ID,
        asset_type="image",
        model="nano-banana",
        prompt="red sneaker on marble",
        request_id="req-ok",
        provider=provider,
    )

    assert outcome.credits_spent == 5
    assert outcome.new_balance == 15
    assert outcome.task_id == "task-ok"
    assert outcome.result_url == "https://cdn.test/out.png"
    assert provider.polled == 2
    assert provider.created[0]["model"] == "nano-banana"

    account, entries, locks, assets = await _state(studio)
    assert account.balance == 15
    assert account.frozen_balance == 0
    assert account.total_spent == 5
    assert locks == []
    assert [(entry.transaction_type, entry.reference_id) for entry in entries] == [
        ("earn", "seed_20"),
        ("freeze", "hold_image_req-ok"),
        ("spend", "generation_image_task-ok"),
    ]
    assert entries[-1].source == "api_call"
    assert entries[-1].balance_after == account.balance
    assert assets[0].status == "completed"
    assert assets[0].credits_spent == 5
    assert assets[0].result_url == "https://cdn.test/out.png"


@pytest.mark.asyncio
async def test_provider_failure_refunds_hold_and_releases_lock(studio, make_user):
    await make_user(USER_ID)
    await _fund(studio, 20)
    provider = FakeProvider(states=["processing", "fail"], task_id="task-bad")

    with pytest.raises(GenerationFailedError) as exc_info:
        await run_generation(
            USER_ID,
            asset_type="video",
            model="sora-2",
            prompt="product turntable",
            request_id="req-bad",
            provider=provider,
        )

    assert "content policy violation" in exc_info.value.reason
    account, entries, locks, assets = await _state(studio)
    assert account.balance == 20
    assert account.frozen_balance == 0
    assert account.total_spent == 0
    assert locks == []
    assert [entry.transaction_type for entry in entries] == ["earn", "freeze", "unfreeze"]
    assert entries[-1].reference_id == "refund_video_req-bad"
    assert assets[0].status == "failed"
    assert assets[0].id == exc_info.value.asset_id


@pytest.mark.asyncio
async def test_create_task_error_never_charges(studio, make_user):
    await make_user(USER_ID)
    await _fund(studio, 20)
    provider = FakeProvider(create_error=GenerationProviderError("upstream 500"))

    with pytest.raises(GenerationFailedError):
        await run_generation(USER_ID, asset_type="image", model="flux-1.1", prompt="mug", provider=provider)

    account, entries, locks, _ = await _state(studio)
    assert account.available_balance == 20
    assert all(entry.transaction_type != "spend" for entry in entries)
    assert locks == []


@pytest.mark.asyncio
async def test_unexpected_error_still_releases_lock_and_refunds(studio, make_user):
    await make_user(USER_ID)
    await _fund(studio, 20)
    provider = FakeProvider(create_error=RuntimeError("boom"))

    with pytest.raises(RuntimeError, match="boom"):
        await run_generation(USER_ID, asset_type="image", model="nano-banana", prompt="lamp", provider=provider)

    account, entries, locks, _ = await _state(studio)
    assert account.balance == 20
    assert account.frozen_balance == 0
    assert [entry.transaction_type for entry in entries] == ["earn", "freeze", "unfreeze"]
    assert locks == []


@pytest.mark.asyncio
async def test_poll_timeout_is_a_provider_failure(studio, make_user):
    await make_user(USER_ID)
    await _fund(studio, 20)
    provider = FakeProvider(states=[])

    with patch("services.generation.settings.GENERATION_POLL_TIMEOUT_SECONDS", 0):
        with pytest.raises(GenerationFailedError):
            await run_generation(USER_ID, asset_type="image", model="nano-banana", prompt="vase", provider=provider)

    account, _, locks, _ = await _state(studio)
    assert account.available_balance == 20
    assert locks == []


@pytest.mark.asyncio
async def test_busy_lock_rejects_without_calling_provider(studio, make_user):
    await make_user(USER_ID)
    await _fund(studio, 20)
    async with studio() as db:
        held = await acquire_generation_lock(USER_ID, db, asset_type="image", request_id="in-flight")
    provider = FakeProvider()

    with pytest.raises(LockHeldError) as exc_info:
        await run_generation(USER_ID, asset_type="image", model="nano-banana", prompt="chair", provider=provider)

    assert exc_info.value.existing_lock.id == held.lock_id
    assert exc_info.value.retry_after_seconds() > 800
    assert provider.created == []

    account, entries, locks, assets = await _state(studio)
    assert account.frozen_balance == 0
    assert len(entries) == 1
    assert [lock.id for lock in locks] == [held.lock_id]
    assert assets == []


@pytest.mark.asyncio
async def test_insufficient_credits_rejects_and_releases_lock(studio, make_user):
    await make_user(USER_ID)
    await _fund(studio, 2)
    provider = FakeProvider()

    with pytest.raises(InsufficientFundsError):
        await run_generation(USER_ID, asset_type="video", model="sora-2", prompt="watch", provider=provider)

    account, entries, locks, assets = await _state(studio)
    assert account.balance == 2
    assert len(entries) == 1
    assert locks == []
    assert provider.created == []
    assert assets[0].status == "failed"


@pytest.mark.asyncio
async def test_recover_stalled_generation_returns_hold(studio, make_user):
    await make_user(USER_ID)
    await _fund(studio, 20)
    old = datetime.now(timezone.utc) - timedelta(hours=1)
    async with studio() as db:
        db.add(
            GeneratedAsset(
                id="asset-stalled",
                user_id=USER_ID,
                asset_type="image",
                model="nano-banana",
                prompt="crashed mid-flight",
                status="processing",
                request_id="req-stalled",
                hold_reference_id="hold_image_req-stalled",
                created_at=old,
            )
        )
        await db.commit()
        await freeze_credits(
            USER_ID, db, amount=5, source="api_call", description="hold", reference_id="hold_image_req-stalled"
        )

    recovered = await recover_stalled_generations()
    again = await recover_stalled_generations()

    assert recovered == 1
    assert again == 0
    account, entries, _, assets = await _state(studio)
    assert account.balance == 20
    assert account.frozen_balance == 0
    assert entries[-1].reference_id == "refund_image_req-stalled"
    assert assets[0].status == "failed"


@pytest.mark.asyncio
async def test_recover_marks_already_charged_generation_completed(studio, make_user):
    await make_user(USER_ID)
    await _fund(studio, 20)
    async with studio() as db:
        db.add(
            GeneratedAsset(
                id="asset-charged",
                user_id=USER_ID,
                asset_type="image",
                model="nano-banana",
                prompt="charged before crash",
                status="processing",
                request_id="req-charged",
                task_id="task-charged",
                hold_reference_id="hold_image_req-charged",
            )
        )
        await db.commit()
        await db.execute(
            update(GeneratedAsset)
            .where(GeneratedAsset.id == "asset-charged")
            .values(created_at=datetime.now(timezone.utc) - timedelta(hours=1))
        )
        await db.commit()

    async with studio() as db:
        await freeze_credits(
            USER_ID, db, amount=5, source="api_call", description="hold", reference_id="hold_image_req-charged"
        )
        await spend_credits(
            USER_ID,
            db,
            amount=5,
            source="api_call",
            description="charge",
            reference_id="generation_image_task-charged",
            from_frozen=True,
        )

    assert await recover_stalled_generations() == 1
    account, _, _, assets = await _state(studio)
    assert account.balance == 15
    assert account.frozen_balance == 0
    assert assets[0].status == "completed"
    assert assets[0].credits_spent == 5


class SweepingProvider(FakeProvider):
    """Runs a stalled-generation sweep while the task is still polling."""

    def __init__(self, session_maker, *, expire_lock=False, **kwargs):
        super().__init__(states=["processing", "success"], **kwargs)
        self.session_maker = session_maker
        self.expire_lock = expire_lock
        self.recovered = None

    async def get_task_status(self, task_id):
        if self.recovered is None:
            past = datetime.now(timezone.utc) - timedelta(hours=1)
            async with self.session_maker() as db:
                await db.execute(update(GeneratedAsset).values(created_at=past))
                if self.expire_lock:
                    await db.execute(update(GenerationLock).values(expires_at=past))
                await db.commit()
            self.recovered = await recover_stalled_generations()
        return await super().get_task_status(task_id)


async def _fund_with_video_hold(session_maker) -> None:
    await _fund(session_maker, 40)
    async with session_maker() as db:
        await freeze_credits(
            USER_ID, db, amount=20, source="api_call", description="hold", reference_id="hold_video_req-other"
        )


@pytest.mark.asyncio
async def test_recovery_skips_generation_that_still_holds_its_lock(studio, make_user):
    await make_user(USER_ID)
    await _fund_with_video_hold(studio)
    provider = SweepingProvider(studio, task_id="task-live")

    outcome = await run_generation(
        USER_ID, asset_type="image", model="nano-banana", prompt="slow render", request_id="req-live", provider=provider
    )

    assert provider.recovered == 0
    assert outcome.new_balance == 35
    account, entries, _, assets = await _state(studio)
    assert account.balance == 35
    assert account.frozen_balance == 20
    assert "refund_image_req-live" not in [entry.reference_id for entry in entries]
    assert assets[0].status == "completed"


@pytest.mark.asyncio
async def test_returned_hold_is_not_taken_from_another_request(studio, make_user):
    await make_user(USER_ID)
    await _fund_with_video_hold(studio)
    provider = SweepingProvider(studio, expire_lock=True, task_id="task-late")

    outcome = await run_generation(
        USER_ID, asset_type="image", model="nano-banana", prompt="late result", request_id="req-late", provider=provider
    )

    assert provider.recovered == 1
    assert outcome.credits_spent == 5
    account, entries, _, assets = await _state(studio)
    assert account.balance == 35
    assert account.frozen_balance == 20
    assert account.available_balance == 15
    assert [entry.reference_id for entry in entries][-2:] == ["refund_image_req-late", "generation_image_task-late"]
    assert assets[0].status == "completed"


@pytest.mark.asyncio
async def test_recovery_rejects_age_below_lock_ttl(studio):
    with pytest.raises(ValueError):
        await recover_stalled_generations(max_age_ms=1)
