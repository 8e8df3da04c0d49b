"""
Tests for SubscriptionService: ledger + snapshot updates, ordering,
atomicity, user cancel, checkout and the grace period sweep.
"""
from datetime import datetime, timedelta

import pytest

from crud.subscription import SubscriptionRepository
from crud.user import UserRepository
from errors import AuthorizationError, ConflictError, NotFoundError, UpstreamError, ValidationError
from services import subscription_service as subscription_service_module
from services.subscription_machine import ContractTerms, SubscriptionEvent as E
from services.subscription_service import Outcome

T0 = datetime(2026, 3, 1, 9, 0, 0)


class FakeGateway:
    """Stands in for PaystackClient; records calls and can be told to fail."""

    def __init__(self, fail=False):
        self.fail = fail
        self.disabled = []
        self.initialized = []
        self.transactions = {}
        self.customers = []

    async def disable_subscription(self, code, token):
        if self.fail:
            raise UpstreamError("Payment gateway timed out")
        self.disabled.append((code, token))
        return {}

    async def initialize_transaction(self, email, amount_minor, metadata, plan_code=None):
        self.initialized.append({
            "email": email, "amount": amount_minor, "metadata": metadata, "plan": plan_code,
        })
        return {
            "authorization_url": "https://checkout.paystack.com/abc123",
            "access_code": "abc123",
            "reference": "ref_abc123",
        }

    async def get_or_create_customer(self, user):
        self.customers.append(user.email)
        return {"customer_code": "CUS_fake"}

    async def verify_transaction(self, reference):
        return self.transactions[reference]

    async def aclose(self):
        pass


@pytest.fixture
def gateway(services):
    fake = FakeGateway()
    services.subscriptions.gateway = fake
    return fake


def _terms(**overrides):
    values = dict(
        plan_code="PLN_monthly", plan_interval="monthly", subscription_code="SUB_1",
        email_token="tok_1", amount=2000, currency="GHS",
        next_payment_date=T0 + timedelta(days=30),
    )
    values.update(overrides)
    return ContractTerms(**values)


async def _state(services, user_id):
    async with services.session_factory() as session:
        user = await UserRepository(session).get_user_by_id(user_id)
        ledgers = await SubscriptionRepository(session).list_for_user(user_id)
    return user, ledgers


async def _activate(services, user, at=T0, **terms):
    return await services.subscriptions.apply_event(user.id, E.CHARGE_SUCCESS, at, _terms(**terms))


@pytest.mark.asyncio
async def test_activation_creates_current_ledger_and_snapshot(services, make_user, email_sender):
    user = await make_user()
    result = await _activate(services, user)

    assert result.outcome == Outcome.APPLIED
    refreshed, ledgers = await _state(services, user.id)
    assert refreshed.subscription_status == "premium"
    assert refreshed.subscription_plan == "monthly"
    assert refreshed.subscription_end_date == T0 + timedelta(days=30)
    assert len(ledgers) == 1
    assert ledgers[0].is_current is True
    assert ledgers[0].status == "premium"
    assert ledgers[0].subscription_code == "SUB_1"
    assert ledgers[0].last_event_at == T0

    await services.notifier.drain()
    assert [m["subject"] for m in email_sender.sent] == ["Your premium subscription is active"]


@pytest.mark.asyncio
async def test_repeated_charge_is_a_noop_that_keeps_one_ledger(services, make_user, email_sender):
    user = await make_user()
    await _activate(services, user)
    result = await _activate(services, user, at=T0 + timedelta(days=30),
                             next_payment_date=T0 + timedelta(days=60))

    assert result.outcome == Outcome.NOOP
    refreshed, ledgers = await _state(services, user.id)
    assert refreshed.subscription_status == "premium"
    assert len(ledgers) == 1
    # renewal terms still land on the contract
    assert ledgers[0].next_payment_date == T0 + timedelta(days=60)
    assert refreshed.subscription_end_date == T0 + timedelta(days=60)

    await services.notifier.drain()
    assert len(email_sender.sent) == 1


@pytest.mark.asyncio
async def test_event_older_than_last_applied_is_dropped(services, make_user):
    user = await make_user()
    await _activate(services, user, at=T0 + timedelta(hours=1))

    result = await services.subscriptions.apply_event(user.id, E.PAYMENT_FAILED, T0)

    assert result.outcome == Outcome.STALE
    refreshed, ledgers = await _state(services, user.id)
    assert refreshed.subscription_status == "premium"
    assert ledgers[0].last_event_at == T0 + timedelta(hours=1)


@pytest.mark.asyncio
async def test_resubscribe_after_cancel_opens_new_contract(services, make_user):
    user = await make_user()
    await _activate(services, user)
    await services.subscriptions.apply_event(user.id, E.SUBSCRIPTION_DISABLED, T0 + timedelta(days=1))
    await _activate(services, user, at=T0 + timedelta(days=2), subscription_code="SUB_2")

    refreshed, ledgers = await _state(services, user.id)
    assert refreshed.subscription_status == "premium"
    assert len(ledgers) == 2
    current = [ledger for ledger in ledgers if ledger.is_current]
    assert len(current) == 1
    assert current[0].subscription_code == "SUB_2"
    retired = [ledger for ledger in ledgers if not ledger.is_current][0]
    assert retired.status == "cancelled"
    assert retired.cancelled_at == T0 + timedelta(days=1)

    history = await services.subscriptions.get_history(user.id)
    assert [(entry["subscription_code"], entry["status"]) for entry in history] == [
        ("SUB_2", "premium"), ("SUB_1", "cancelled"),
    ]


@pytest.mark.asyncio
async def test_failure_mid_transition_leaves_nothing_behind(services, make_user, monkeypatch):
    user = await make_user()
    real_apply = subscription_service_module.apply_transition

    def apply_then_fail(*args, **kwargs):
        real_apply(*args, **kwargs)
        raise RuntimeError("database went away")

    monkeypatch.setattr(subscription_service_module, "apply_transition", apply_then_fail)

    with pytest.raises(RuntimeError):
        await _activate(services, user)

    refreshed, ledgers = await _state(services, user.id)
    assert refreshed.subscription_status == "free"
    assert refreshed.subscription_plan is None
    assert ledgers == []


@pytest.mark.asyncio
async def test_unknown_user_is_not_found(services):
    with pytest.raises(NotFoundError):
        await services.subscriptions.apply_event(12345, E.CHARGE_SUCCESS, T0, _terms())


@pytest.mark.asyncio
async def test_customer_code_is_remembered(services, make_user):
    user = await make_user()
    await services.subscriptions.apply_event(
        user.id, E.CHARGE_SUCCESS, T0, _terms(), customer_code="CUS_ama"
    )
    refreshed, _ = await _state(services, user.id)
    assert refreshed.provider_customer_code == "CUS_ama"


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_disables_on_gateway_then_transitions(self, services, make_user, gateway):
        user = await make_user()
        await _activate(services, user)

        result = await services.subscriptions.cancel(user.id)

        assert result.outcome == Outcome.APPLIED
        assert gateway.disabled == [("SUB_1", "tok_1")]
        refreshed, ledgers = await _state(services, user.id)
        assert refreshed.subscription_status == "cancelled"
        assert refreshed.subscription_auto_renew is False
        assert ledgers[0].cancelled_at is not None

    @pytest.mark.asyncio
    async def test_gateway_failure_leaves_subscription_untouched(self, services, make_user, gateway):
        user = await make_user()
        await _activate(services, user)
        gateway.fail = True

        with pytest.raises(UpstreamError):
            await services.subscriptions.cancel(user.id)

        refreshed, ledgers = await _state(services, user.id)
        assert refreshed.subscription_status == "premium"
        assert ledgers[0].cancelled_at is None

    @pytest.mark.asyncio
    async def test_cancel_without_subscription_is_not_found(self, services, make_user, gateway):
        user = await make_user()
        with pytest.raises(NotFoundError):
            await services.subscriptions.cancel(user.id)
        assert gateway.disabled == []

    @pytest.mark.asyncio
    async def test_cancel_before_gateway_subscription_exists(self, services, make_user, gateway):
        user = await make_user()
        await _activate(services, user, subscription_code=None, email_token=None)
        with pytest.raises(ConflictError):
            await services.subscriptions.cancel(user.id)

    @pytest.mark.asyncio
    async def test_past_due_subscription_can_be_cancelled(self, services, make_user, gateway):
        user = await make_user()
        await _activate(services, user)
        await services.subscriptions.apply_event(user.id, E.PAYMENT_FAILED, T0 + timedelta(days=30))

        await services.subscriptions.cancel(user.id)

        refreshed, _ = await _state(services, user.id)
        assert refreshed.subscription_status == "cancelled"


class TestGracePeriod:

    @pytest.mark.asyncio
    async def test_past_due_expires_only_after_grace_period(self, services, make_user):
        user = await make_user()
        await _activate(services, user, next_payment_date=T0 + timedelta(days=30))
        await services.subscriptions.apply_event(user.id, E.PAYMENT_FAILED, T0 + timedelta(days=30))

        assert await services.subscriptions.expire_grace_periods(now=T0 + timedelta(days=32)) == 0
        refreshed, _ = await _state(services, user.id)
        assert refreshed.subscription_status == "past_due"

        assert await services.subscriptions.expire_grace_periods(now=T0 + timedelta(days=34)) == 1
        refreshed, _ = await _state(services, user.id)
        assert refreshed.subscription_status == "cancelled"

    @pytest.mark.asyncio
    async def test_premium_users_are_not_swept(self, services, make_user):
        user = await make_user()
        await _activate(services, user, next_payment_date=T0)
        assert await services.subscriptions.expire_grace_periods(now=T0 + timedelta(days=90)) == 0


class TestCheckout:

    @pytest.mark.asyncio
    async def test_checkout_carries_user_and_plan(self, services, make_user, gateway):
        user = await make_user()
        checkout = await services.subscriptions.start_checkout(user, "yearly")

        assert checkout == {
            "authorization_url": "https://checkout.paystack.com/abc123",
            "access_code": "abc123",
            "reference": "ref_abc123",
        }
        sent = gateway.initialized[0]
        assert sent["plan"] == "PLN_yearly"
        assert sent["amount"] == services.config.subscription_price_yearly_minor
        assert sent["metadata"] == {"user_id": user.id, "subscription": True, "plan": "yearly"}

        refreshed, ledgers = await _state(services, user.id)
        assert refreshed.subscription_status == "free"
        assert ledgers == []
        assert refreshed.provider_customer_code == "CUS_fake"
        assert gateway.customers == [user.email]

    @pytest.mark.asyncio
    async def test_unknown_plan_rejected(self, services, make_user, gateway):
        user = await make_user()
        with pytest.raises(ValidationError):
            await services.subscriptions.start_checkout(user, "weekly")
        assert gateway.initialized == []

    @pytest.mark.asyncio
    async def test_active_subscriber_cannot_check_out_again(self, services, make_user, gateway):
        user = await make_user()
        await _activate(services, user)
        refreshed, _ = await _state(services, user.id)
        with pytest.raises(ConflictError):
            await services.subscriptions.start_checkout(refreshed, "monthly")

    @pytest.mark.asyncio
    async def test_verify_payment_checks_ownership(self, services, make_user, gateway):
        owner = await make_user()
        other = await make_user(email="kwame@example.com")
        gateway.transactions["ref_1"] = {
            "reference": "ref_1", "status": "success", "amount": 2000, "currency": "GHS",
            "paid_at": "2026-03-01T09:00:00.000Z", "metadata": {"user_id": owner.id},
        }

        result = await services.subscriptions.verify_payment(owner, "ref_1")
        assert result["status"] == "success"
        assert result["amount"] == 2000

        with pytest.raises(AuthorizationError):
            await services.subscriptions.verify_payment(other, "ref_1")


class RecordingSmsSender:
    def __init__(self):
        self.sent = []

    async def send(self, to, message):
        self.sent.append((to, message))


@pytest.mark.asyncio
async def test_payment_failure_sends_sms_to_ghana_number(services, make_user):
    sms = RecordingSmsSender()
    services.notifier.sms_sender = sms
    user = await make_user(phone="0241234567")
    await _activate(services, user)

    await services.subscriptions.apply_event(user.id, E.PAYMENT_FAILED, T0 + timedelta(days=30))
    await services.notifier.drain()

    assert len(sms.sent) == 1
    assert sms.sent[0][0] == "+233241234567"
