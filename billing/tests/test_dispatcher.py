import pytest
import threading
from datetime import date, datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

from django.db import OperationalError
from django.db.models import QuerySet

from billing.dispatcher import ReminderDispatcher
from billing.models import Installment, PaymentPlan
from billing.reminder_selector import ReminderPolicy

NOW = datetime(2025, 1, 10, 12, 0, tzinfo=dt_timezone.utc)
TODAY = date(2025, 1, 10)


def make_plan(**overrides):
    fields = {
        "tenant_id": "academy-1",
        "account_id": "student-1",
        "account_name": "Asha Rao",
        "payer_email": "asha@example.com",
        "course_id": "course-1",
        "course_name": "Piano Basics",
        "plan_type": PaymentPlan.ONE_TIME,
        "total_amount": Decimal("1000"),
        "outstanding_amount": Decimal("1000"),
        "next_due_date": TODAY + timedelta(days=2),
        "created_by": "admin",
    }
    fields.update(overrides)
    return PaymentPlan.objects.create(**fields)


@pytest.mark.django_db
class TestReminderDispatcher:

    @pytest.fixture
    def notifier(self):
        notifier = MagicMock()
        notifier.channel = "email"
        notifier.send.return_value = True
        return notifier

    @pytest.fixture
    def directory(self):
        directory = MagicMock()
        directory.get_academy_name.return_value = "Sunrise Academy"
        directory.get_account_display_name.return_value = "Directory Name"
        directory.get_account_contact.return_value = "directory@example.com"
        return directory

    @pytest.fixture
    def dispatcher(self, notifier, directory):
        return ReminderDispatcher(notifier, directory)

    @pytest.fixture
    def policy(self):
        return ReminderPolicy()

    # ------------------------------------------------------------------
    # SUCCESS
    # ------------------------------------------------------------------
    def test_sends_and_updates_counters(self, dispatcher, notifier, policy):
        plan = make_plan()

        report = dispatcher.run_batch(policy, now=NOW)

        assert report.summary() == {"total": 1, "sent": 1, "skipped": 0, "errors": 0}
        contact, params = notifier.send.call_args.args
        assert contact == "asha@example.com"
        assert notifier.send.call_args.kwargs["timeout"] == 10
        assert params["category"] == "PRE_DUE"
        assert params["academy_name"] == "Sunrise Academy"
        assert params["student_name"] == "Asha Rao"
        assert params["amount_due"] == "1000.00"
        assert params["due_date"] == "2025-01-12"

        plan.refresh_from_db()
        assert plan.reminders_count == 1
        assert plan.last_reminder_sent_at == NOW

        item = report.items[0]
        assert item.status == "sent"
        assert item.category == "PRE_DUE"
        assert item.email == "asha@example.com"

    def test_second_run_inside_throttle_sends_nothing(self, dispatcher, notifier, policy):
        make_plan()

        dispatcher.run_batch(policy, now=NOW)
        second = dispatcher.run_batch(policy, now=NOW + timedelta(hours=1))

        assert second.summary() == {"total": 0, "sent": 0, "skipped": 0, "errors": 0}
        assert notifier.send.call_count == 1

    def test_falls_back_to_directory_contact(self, dispatcher, notifier, directory, policy):
        make_plan(payer_email="", account_name="")

        report = dispatcher.run_batch(policy, now=NOW)

        assert report.sent == 1
        directory.get_account_contact.assert_called_once_with("academy-1", "student-1", channel="email")
        contact, params = notifier.send.call_args.args
        assert contact == "directory@example.com"
        assert params["student_name"] == "Directory Name"

    # ------------------------------------------------------------------
    # SKIPS AND ERRORS
    # ------------------------------------------------------------------
    def test_missing_contact_is_skipped(self, dispatcher, notifier, directory, policy):
        plan = make_plan(payer_email="")
        directory.get_account_contact.return_value = None

        report = dispatcher.run_batch(policy, now=NOW)

        assert report.summary() == {"total": 1, "sent": 0, "skipped": 1, "errors": 0}
        assert report.items[0].reason == "No contact found"
        notifier.send.assert_not_called()
        plan.refresh_from_db()
        assert plan.reminders_count == 0
        assert plan.last_reminder_sent_at is None

    def test_one_failure_does_not_abort_batch(self, dispatcher, notifier, policy):
        failing = make_plan(account_id="student-1", next_due_date=TODAY + timedelta(days=1))
        ok = make_plan(account_id="student-2", next_due_date=TODAY + timedelta(days=2))
        notifier.send.side_effect = [Exception("SMTP connection timed out"), True]

        report = dispatcher.run_batch(policy, now=NOW)

        assert report.summary() == {"total": 2, "sent": 1, "skipped": 0, "errors": 1}
        assert report.items[0].plan_id == failing.pk
        assert report.items[0].reason == "SMTP connection timed out"

        failing.refresh_from_db()
        ok.refresh_from_db()
        assert failing.reminders_count == 0
        assert failing.last_reminder_sent_at is None
        assert ok.reminders_count == 1

    def test_notifier_false_is_error(self, dispatcher, notifier, policy):
        plan = make_plan()
        notifier.send.return_value = False

        report = dispatcher.run_batch(policy, now=NOW)

        assert report.errors == 1
        plan.refresh_from_db()
        assert plan.reminders_count == 0

    def test_plan_reminded_by_concurrent_run_is_skipped(self, dispatcher, notifier, policy):
        plan = make_plan()
        PaymentPlan.objects.filter(pk=plan.pk).update(last_reminder_sent_at=NOW, reminders_count=1)

        result = dispatcher._process(plan, "Sunrise Academy", policy, NOW)

        assert result.status == "skipped"
        assert result.reason == "No longer eligible"
        notifier.send.assert_not_called()

    def test_store_failure_does_not_abort_batch(self, dispatcher, notifier, policy):
        locked = make_plan(account_id="student-1", next_due_date=TODAY + timedelta(days=1))
        ok = make_plan(account_id="student-2", next_due_date=TODAY + timedelta(days=2))
        original_update = QuerySet.update
        calls = []

        def update_locked_once(queryset, **kwargs):
            calls.append(kwargs)
            if len(calls) == 1:
                raise OperationalError("database is locked")
            return original_update(queryset, **kwargs)

        with patch.object(QuerySet, "update", autospec=True, side_effect=update_locked_once):
            report = dispatcher.run_batch(policy, now=NOW)

        assert report.summary() == {"total": 2, "sent": 1, "skipped": 0, "errors": 1}
        assert report.items[0].plan_id == locked.pk
        assert report.items[0].status == "error"
        assert report.items[0].reason == "database is locked"
        assert report.items[1].plan_id == ok.pk
        assert report.items[1].status == "sent"
        ok.refresh_from_db()
        assert ok.reminders_count == 1

    def test_concurrent_counter_update_is_reported(self, dispatcher, notifier, policy):
        plan = make_plan()

        def send_while_other_run_records(contact, params, timeout=None):
            PaymentPlan.objects.filter(pk=plan.pk).update(last_reminder_sent_at=NOW - timedelta(minutes=1))
            return True

        notifier.send.side_effect = send_while_other_run_records

        report = dispatcher.run_batch(policy, now=NOW)

        item = report.items[0]
        assert item.status == "sent"
        assert item.reason == "Counters updated by concurrent run"
        plan.refresh_from_db()
        assert plan.reminders_count == 0
        assert plan.last_reminder_sent_at == NOW - timedelta(minutes=1)

    # ------------------------------------------------------------------
    # MESSAGE CONTENT
    # ------------------------------------------------------------------
    def test_plan_due_today_reads_as_due_today(self, dispatcher, notifier, policy):
        make_plan(next_due_date=TODAY)

        report = dispatcher.run_batch(policy, now=NOW)

        assert report.items[0].category == "PRE_DUE"
        _, params = notifier.send.call_args.args
        assert params["category"] == "DUE_TODAY"

    def test_installment_reminder_lists_other_installments_due_soon(self, dispatcher, notifier, policy):
        plan = make_plan(
            plan_type=PaymentPlan.ONE_TIME_WITH_INSTALLMENTS,
            total_amount=Decimal("3000"),
            outstanding_amount=Decimal("3000"),
            installment_count=3,
            next_due_date=TODAY + timedelta(days=1),
        )
        for number, due_in, remind_in in [(1, 1, -1), (2, 2, 0), (3, 20, 18)]:
            Installment.objects.create(
                plan=plan,
                installment_number=number,
                due_date=TODAY + timedelta(days=due_in),
                reminder_date=TODAY + timedelta(days=remind_in),
                amount=Decimal("1000"),
            )

        dispatcher.run_batch(policy, now=NOW)

        _, params = notifier.send.call_args.args
        assert params["installment_number"] == 1
        assert params["installment_count"] == 3
        assert params["amount_due"] == "1000.00"
        assert params["installments_due_soon"] == [2]

    # ------------------------------------------------------------------
    # SELECTION
    # ------------------------------------------------------------------
    def test_only_eligible_plans_selected(self, dispatcher, policy):
        eligible = make_plan()
        make_plan(status=PaymentPlan.STATUS_PAUSED)
        make_plan(next_due_date=TODAY + timedelta(days=20))
        make_plan(outstanding_amount=Decimal("0"))
        make_plan(reminder_enabled=False)
        make_plan(next_due_date=TODAY - timedelta(days=3), reminders_count=5)

        selected = dispatcher.select(policy, NOW)

        assert [plan.pk for plan, _ in selected] == [eligible.pk]

    def test_limit_and_due_date_order(self, dispatcher, policy):
        later = make_plan(next_due_date=TODAY + timedelta(days=3))
        overdue = make_plan(next_due_date=TODAY - timedelta(days=1))
        today = make_plan(next_due_date=TODAY)

        report = dispatcher.run_batch(policy, now=NOW, limit=2)

        assert report.total == 2
        assert [item.plan_id for item in report.items] == [overdue.pk, today.pk]
        assert [item.category for item in report.items] == ["OVERDUE", "PRE_DUE"]
        later.refresh_from_db()
        assert later.reminders_count == 0

    def test_academy_name_looked_up_once_per_tenant(self, dispatcher, notifier, directory, policy):
        make_plan(tenant_id="academy-1")
        make_plan(tenant_id="academy-1", account_id="student-2")
        make_plan(tenant_id="academy-2", account_id="student-3")
        directory.get_academy_name.side_effect = ["Sunrise Academy", Exception("directory down")]

        report = dispatcher.run_batch(policy, now=NOW)

        assert report.sent == 3
        assert directory.get_academy_name.call_count == 2
        academy_names = {
            call.args[1]["academy_name"] for call in notifier.send.call_args_list
        }
        assert academy_names == {"Sunrise Academy", "Academy"}

    # ------------------------------------------------------------------
    # CANCELLATION
    # ------------------------------------------------------------------
    def test_cancel_event_stops_run(self, dispatcher, notifier, policy):
        make_plan()
        event = threading.Event()
        event.set()

        report = dispatcher.run_batch(policy, now=NOW, cancel_event=event)

        assert report.cancelled is True
        assert report.items == []
        notifier.send.assert_not_called()

    def test_expired_deadline_stops_run(self, dispatcher, notifier, policy):
        make_plan()

        report = dispatcher.run_batch(policy, now=NOW, deadline=datetime(2000, 1, 1, tzinfo=dt_timezone.utc))

        assert report.cancelled is True
        notifier.send.assert_not_called()

    def test_report_as_dict(self, dispatcher, policy):
        make_plan()

        data = dispatcher.run_batch(policy, now=NOW).as_dict(include_items=True)

        assert data["summary"]["sent"] == 1
        assert data["results"][0]["status"] == "sent"
        assert "results" not in dispatcher.run_batch(policy, now=NOW).as_dict()
