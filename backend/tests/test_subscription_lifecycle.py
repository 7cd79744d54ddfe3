"""
Billing cycle acceptance tests.
- Trial boundary: trial_ends_at one second after now is untouched, one second before transitions
- Free plan trial end: no invoice, trial flag cleared, trial_ended_free notice
- Paid trial end and renewal on essencial create the invoice, advance the period and notify once
- Re-running for the same period never creates a second invoice nor re-notifies
- One subscription failing does not stop the others
- Notification failure never rolls back billing state
- dry_run writes nothing
"""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from models import ProviderConfig
from services.notification_orchestrator import DispatchResult
from services.subscription_lifecycle import subscription_lifecycle
from services.whatsapp_providers import SendResult

pytestmark = pytest.mark.asyncio

NOW = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)
PROVIDER = ProviderConfig(provider="zpro", api_url="https://zpro.example.com", api_key="k", instance_id="i")


def _db(existing_invoice=None, profile=None):
    db = MagicMock()
    db.invoices.find_one = AsyncMock(return_value=existing_invoice)
    db.invoices.insert_one = AsyncMock()
    db.subscriptions.update_one = AsyncMock()
    db.condominiums.find_one = AsyncMock(return_value={"id": "condo-1", "name": "Residencial Aurora", "owner_id": "user-1"})
    db.profiles.find_one = AsyncMock(
        return_value=profile if profile is not None else {"full_name": "Maria Souza", "phone": "(11) 98888-7777"}
    )
    db.whatsapp_templates.find_one = AsyncMock(return_value={
        "slug": "invoice_generated",
        "content": "Olá {nome}, fatura de R$ {valor} ({periodo}) vence em {vencimento}. {link}",
        "is_active": True,
    })
    db.notifications_sent.insert_one = AsyncMock()
    return db


def _sub(sub_id="sub-1", plan="essencial", **fields):
    doc = {
        "id": sub_id,
        "condominium_id": "condo-1",
        "plan": plan,
        "active": True,
        "is_trial": False,
        "trial_ends_at": None,
        "current_period_end": NOW - timedelta(days=1),
        "notifications_used": 12,
        "warnings_used": 3,
        "fines_used": 1,
    }
    doc.update(fields)
    return doc


@pytest.fixture
def audit():
    with patch("services.subscription_lifecycle.create_audit_log", new_callable=AsyncMock) as lifecycle_audit, \
            patch("services.invoice_generator.create_audit_log", new_callable=AsyncMock), \
            patch("services.notification_orchestrator.create_audit_log", new_callable=AsyncMock):
        yield lifecycle_audit


def _dispatch_mock(success=True, error=None):
    return patch(
        "services.subscription_lifecycle.notification_orchestrator.dispatch",
        new_callable=AsyncMock,
        return_value=DispatchResult(success=success, provider_message_id="m1" if success else None, error=error),
    )


async def _run(db, subscriptions, **kwargs):
    kwargs.setdefault("provider_config", PROVIDER)
    with patch("services.subscription_lifecycle.database.get_db", return_value=db):
        return await subscription_lifecycle.run_billing_cycle(NOW, subscriptions=subscriptions, **kwargs)


async def test_trial_ending_one_second_later_is_untouched(audit):
    db = _db()
    sub = _sub(is_trial=True, trial_ends_at=NOW + timedelta(seconds=1), current_period_end=None)
    with _dispatch_mock() as dispatch:
        result = await _run(db, [sub])

    assert result.processed == 0
    assert result.trials_ended == 0
    db.invoices.insert_one.assert_not_awaited()
    db.subscriptions.update_one.assert_not_awaited()
    dispatch.assert_not_awaited()


async def test_trial_ended_one_second_ago_transitions(audit):
    db = _db()
    sub = _sub(is_trial=True, trial_ends_at=NOW - timedelta(seconds=1), current_period_end=None)
    with _dispatch_mock() as dispatch:
        result = await _run(db, [sub])

    assert result.trials_ended == 1
    assert result.invoices_created == 1
    assert result.notifications_sent == 1
    filter_, update = db.subscriptions.update_one.await_args.args
    assert filter_ == {"id": "sub-1"}
    assert update["$set"]["is_trial"] is False
    assert dispatch.await_args.args[0] == "invoice_generated"
    assert audit.call_args.kwargs["action"].value == "SUBSCRIPTION_TRIAL_ENDED"


async def test_trial_ending_exactly_now_transitions(audit):
    db = _db()
    sub = _sub(is_trial=True, trial_ends_at=NOW, current_period_end=None)
    with _dispatch_mock():
        result = await _run(db, [sub])
    assert result.trials_ended == 1


async def test_naive_mongo_datetimes_are_treated_as_utc(audit):
    db = _db()
    sub = _sub(is_trial=True, trial_ends_at=datetime(2025, 3, 10, 8, 59, 59), current_period_end=None)
    with _dispatch_mock():
        result = await _run(db, [sub])
    assert result.trials_ended == 1


async def test_free_plan_trial_end_sends_notice_without_invoice(audit):
    db = _db()
    sub = _sub(plan="start", is_trial=True, trial_ends_at=NOW - timedelta(hours=1), current_period_end=None)
    with _dispatch_mock() as dispatch:
        result = await _run(db, [sub])

    assert result.invoices_created == 0
    assert result.trials_ended == 1
    assert result.notifications_sent == 1
    db.invoices.insert_one.assert_not_awaited()
    fields = db.subscriptions.update_one.await_args.args[1]["$set"]
    assert fields["is_trial"] is False
    assert fields["current_period_start"] == datetime(2025, 3, 10, tzinfo=timezone.utc)
    assert fields["current_period_end"] == datetime(2025, 4, 10, tzinfo=timezone.utc)
    assert fields["notifications_used"] == 0
    assert fields["warnings_used"] == 0
    assert fields["fines_used"] == 0
    assert dispatch.await_args.args[0] == "trial_ended_free"


async def test_free_plan_renewal_advances_period_silently(audit):
    db = _db()
    with _dispatch_mock() as dispatch:
        result = await _run(db, [_sub(plan="start")])
    assert result.processed == 1
    assert result.invoices_created == 0
    db.subscriptions.update_one.assert_awaited_once()
    dispatch.assert_not_awaited()


async def test_unknown_plan_is_treated_as_free(audit):
    db = _db()
    with _dispatch_mock():
        result = await _run(db, [_sub(plan="legacy-gold")])
    assert result.invoices_created == 0
    db.invoices.insert_one.assert_not_awaited()


async def test_essencial_renewal_end_to_end(audit):
    db = _db()
    sub = _sub(sub_id="S", plan="essencial", current_period_end=datetime(2025, 3, 9, tzinfo=timezone.utc))

    with patch(
        "services.notification_orchestrator.send_whatsapp_message",
        new_callable=AsyncMock,
        return_value=SendResult(success=True, message_id="MSG-1"),
    ) as send:
        result = await _run(db, [sub])

    assert result.processed == 1
    assert result.invoices_created == 1
    assert result.notifications_sent == 1
    assert result.errors == []

    invoice = db.invoices.insert_one.await_args.args[0]
    assert invoice["subscription_id"] == "S"
    assert invoice["amount"] == 49.90
    assert invoice["period_start"] == "2025-03-10"
    assert invoice["period_end"] == "2025-04-10"
    assert invoice["due_date"] == "2025-03-25"
    assert invoice["status"] == "pending"
    assert invoice["description"] == "Assinatura Essencial - 10/03/2025 a 10/04/2025"

    fields = db.subscriptions.update_one.await_args.args[1]["$set"]
    assert fields["current_period_start"] == datetime(2025, 3, 10, tzinfo=timezone.utc)
    assert fields["current_period_end"] == datetime(2025, 4, 10, tzinfo=timezone.utc)
    assert "is_trial" not in fields

    phone, body, _settings = send.await_args.args
    assert phone == "5511988887777"
    assert "R$ 49,90" in body
    assert "25/03/2025" in body

    db.notifications_sent.insert_one.assert_awaited_once()
    attempt = db.notifications_sent.insert_one.await_args.args[0]
    assert attempt["template_slug"] == "invoice_generated"
    assert attempt["success"] is True
    assert attempt["provider_message_id"] == "MSG-1"
    assert attempt["context"]["invoice_id"] == invoice["id"]


async def test_essencial_trial_ended_yesterday_end_to_end(audit):
    db = _db()
    sub = _sub(sub_id="T", plan="essencial", is_trial=True,
               trial_ends_at=NOW - timedelta(days=1), current_period_end=None)

    with patch(
        "services.notification_orchestrator.send_whatsapp_message",
        new_callable=AsyncMock,
        return_value=SendResult(success=True, message_id="MSG-T"),
    ) as send:
        result = await _run(db, [sub])

    assert result.trials_ended == 1
    assert result.invoices_created == 1
    assert result.notifications_sent == 1
    assert result.errors == []

    db.invoices.insert_one.assert_awaited_once()
    invoice = db.invoices.insert_one.await_args.args[0]
    assert invoice["subscription_id"] == "T"
    assert invoice["amount"] == 49.90
    assert invoice["period_start"] == "2025-03-10"
    assert invoice["due_date"] == "2025-03-25"

    fields = db.subscriptions.update_one.await_args.args[1]["$set"]
    assert fields["is_trial"] is False
    assert fields["notifications_used"] == 0

    send.assert_awaited_once()
    db.notifications_sent.insert_one.assert_awaited_once()
    attempt = db.notifications_sent.insert_one.await_args.args[0]
    assert attempt["template_slug"] == "invoice_generated"
    assert attempt["success"] is True
    assert attempt["context"]["subscription_id"] == "T"


async def test_rerun_same_period_skips_invoice_and_notification(audit):
    db = _db(existing_invoice={"id": "inv-1", "subscription_id": "sub-1", "period_start": "2025-03-10"})
    with _dispatch_mock() as dispatch:
        result = await _run(db, [_sub()])

    assert result.invoices_created == 0
    assert result.processed == 1
    db.invoices.insert_one.assert_not_awaited()
    dispatch.assert_not_awaited()
    # period is still repaired so the subscription stops being eligible
    db.subscriptions.update_one.assert_awaited_once()


async def test_one_failing_subscription_does_not_stop_the_others(audit):
    db = _db()

    async def insert(doc):
        if doc["subscription_id"] == "A":
            raise RuntimeError("insert failed")

    db.invoices.insert_one = AsyncMock(side_effect=insert)
    with _dispatch_mock():
        result = await _run(db, [_sub("A"), _sub("B"), _sub("C")])

    assert result.invoices_created == 2
    assert result.processed == 2
    assert len(result.errors) == 1
    assert "A" in result.errors[0]
    updated_ids = [c.args[0]["id"] for c in db.subscriptions.update_one.await_args_list]
    assert updated_ids == ["B", "C"]


async def test_notification_failure_keeps_invoice_and_period(audit):
    db = _db()
    with _dispatch_mock(success=False, error="Sessão do WhatsApp desconectada"):
        result = await _run(db, [_sub()])

    assert result.invoices_created == 1
    assert result.notifications_failed == 1
    assert result.notifications_sent == 0
    assert result.errors == []
    assert "desconectada" in result.notification_errors[0]
    db.subscriptions.update_one.assert_awaited_once()


async def test_owner_without_phone_is_notification_failure(audit):
    db = _db(profile={"full_name": "Sem Telefone", "phone": None})
    with _dispatch_mock() as dispatch:
        result = await _run(db, [_sub()])
    assert result.invoices_created == 1
    assert result.notifications_failed == 1
    assert result.errors == []
    dispatch.assert_not_awaited()


async def test_open_period_is_skipped(audit):
    db = _db()
    with _dispatch_mock():
        result = await _run(db, [_sub(current_period_end=NOW + timedelta(days=3))])
    assert result.processed == 0
    db.subscriptions.update_one.assert_not_awaited()


async def test_new_paid_subscription_without_period_is_due(audit):
    db = _db()
    with _dispatch_mock():
        result = await _run(db, [_sub(current_period_end=None)])
    assert result.invoices_created == 1


async def test_dry_run_writes_nothing(audit):
    db = _db()
    subs = [
        _sub("A"),
        _sub("B", plan="start", is_trial=True, trial_ends_at=NOW - timedelta(days=1), current_period_end=None),
        _sub("C", current_period_end=NOW + timedelta(days=10)),
    ]
    with _dispatch_mock() as dispatch:
        with patch("services.subscription_lifecycle.database.get_db", return_value=db):
            result = await subscription_lifecycle.run_billing_cycle(NOW, subscriptions=subs, dry_run=True)

    assert result.dry_run is True
    assert result.processed == 2
    assert result.invoices_created == 1
    assert result.trials_ended == 1
    db.invoices.insert_one.assert_not_awaited()
    db.subscriptions.update_one.assert_not_awaited()
    dispatch.assert_not_awaited()


async def test_fetch_failure_propagates(audit):
    db = MagicMock()
    db.subscriptions.find.return_value.to_list = AsyncMock(side_effect=RuntimeError("db down"))
    with patch("services.subscription_lifecycle.database.get_db", return_value=db):
        with pytest.raises(RuntimeError):
            await subscription_lifecycle.run_billing_cycle(NOW, provider_config=PROVIDER)

