"""Reminder scheduling from stage records, the sweep and the cron endpoint."""

from datetime import datetime, timedelta

from conftest import FIXED_NOW

from proctrack.extensions import db
from proctrack.models import ActivityLog, CaseState, ProcurementCase, ProcurementMethod, Reminder, ReminderType, Role
from proctrack.reminders import schedule, sweep_due

CRON = {"Authorization": "Bearer test-cron-secret"}


def add_case_with_reminder(due_at, reminder_type=ReminderType.DELIVERY_DUE):
    case = ProcurementCase(title="Chairs", method=ProcurementMethod.SMALL_VALUE_RFQ, current_state=CaseState.NOTICE_TO_PROCEED)
    db.session.add(case)
    db.session.flush()
    reminder = schedule(case.id, reminder_type, due_at)
    db.session.commit()
    return case.id, reminder.id


class TestSchedule:
    def test_replace_pending(self, app):
        with app.app_context():
            case_id, reminder_id = add_case_with_reminder(FIXED_NOW + timedelta(days=5))
            moved = schedule(case_id, ReminderType.DELIVERY_DUE, FIXED_NOW + timedelta(days=9), replace_pending=True)
            db.session.commit()

            assert moved.id == reminder_id
            assert Reminder.query.count() == 1
            assert moved.due_at == FIXED_NOW + timedelta(days=9)


class TestSweep:
    def test_sends_due_once(self, app, notifier):
        with app.app_context():
            case_id, reminder_id = add_case_with_reminder(FIXED_NOW - timedelta(minutes=1))
            add_case_with_reminder(FIXED_NOW + timedelta(days=1))

            assert sweep_due() == 1
            assert sweep_due() == 0

            assert len(notifier.sent) == 1
            assert notifier.sent[0]["to"] == app.config["REMINDER_RECIPIENTS"]["DELIVERY_DUE"]
            assert "Delivery due" in notifier.sent[0]["subject"]

            reminder = db.session.get(Reminder, reminder_id)
            assert reminder.sent_at == FIXED_NOW

            entries = ActivityLog.query.filter_by(case_id=case_id, action="reminder_sent").all()
            assert len(entries) == 1
            assert entries[0].payload["reminder_id"] == reminder_id
            assert entries[0].payload["type"] == "DELIVERY_DUE"

    def test_failed_delivery_stays_pending(self, app, notifier):
        notifier.fail = True
        with app.app_context():
            case_id, reminder_id = add_case_with_reminder(FIXED_NOW - timedelta(hours=1))

            assert sweep_due() == 0
            assert db.session.get(Reminder, reminder_id).sent_at is None
            assert ActivityLog.query.filter_by(action="reminder_sent").count() == 0

            notifier.fail = False
            assert sweep_due() == 1

    def test_notifier_exception_is_not_delivered(self, app):
        class Exploding:
            def send(self, to, subject, body):
                raise RuntimeError("smtp down")

        from proctrack.services import get_services

        with app.app_context():
            get_services().notifier = Exploding()
            _, reminder_id = add_case_with_reminder(FIXED_NOW - timedelta(hours=1))
            assert sweep_due() == 0
            assert db.session.get(Reminder, reminder_id).sent_at is None

    def test_already_claimed_row_is_skipped(self, app, notifier):
        with app.app_context():
            case_id, reminder_id = add_case_with_reminder(FIXED_NOW - timedelta(hours=1))

            # Another sweeper marks the row between our snapshot and our claim.
            class Racing:
                def send(self, to, subject, body):
                    db.session.execute(
                        Reminder.__table__.update().where(Reminder.id == reminder_id).values(sent_at=FIXED_NOW)
                    )
                    return True

            from proctrack.services import get_services

            get_services().notifier = Racing()
            assert sweep_due() == 0
            assert ActivityLog.query.filter_by(action="reminder_sent").count() == 0


class TestCronEndpoint:
    def test_requires_secret(self, client):
        assert client.post("/api/cron/reminders").status_code == 401
        assert client.post("/api/cron/reminders", headers={"Authorization": "Bearer wrong"}).status_code == 401

    def test_runs_sweep(self, app, client, notifier):
        with app.app_context():
            add_case_with_reminder(FIXED_NOW - timedelta(minutes=5))

        resp = client.post("/api/cron/reminders", headers=CRON)
        assert resp.status_code == 200
        assert resp.get_json() == {"processed": 1, "purged_idempotency_keys": 0}
        assert len(notifier.sent) == 1

        resp = client.post("/api/cron/reminders", headers=CRON)
        assert resp.get_json()["processed"] == 0


class TestScheduledByStages:
    def test_ntp_sets_delivery_due(self, app, api, new_case):
        case_id = new_case()
        with app.app_context():
            db.session.get(ProcurementCase, case_id).current_state = CaseState.CONTRACT
            db.session.commit()
        # Recording the contract at CONTRACT is a same-state write.
        contract = api("post", f"/api/cases/{case_id}/contract", Role.PROCUREMENT_MANAGER, json={"contractNo": "C-1"})
        assert contract.status_code == 201, contract.get_json()

        resp = api(
            "post",
            f"/api/cases/{case_id}/ntp",
            Role.PROCUREMENT_MANAGER,
            json={"issuedAt": "2025-03-01T00:00:00", "daysToComply": 10},
        )
        assert resp.status_code == 201, resp.get_json()

        with app.app_context():
            case = db.session.get(ProcurementCase, case_id)
            assert case.delivery_due_at == datetime(2025, 3, 11)
            reminders = Reminder.query.filter_by(case_id=case_id).all()
            assert [(r.type, r.due_at) for r in reminders] == [(ReminderType.DELIVERY_DUE, datetime(2025, 3, 11))]

    def test_pre_bid_schedules_both_reminders(self, app, api, new_case):
        case_id = new_case(method="PUBLIC_BIDDING", title="Road works")
        resp = api(
            "post",
            f"/api/cases/{case_id}/pre-bid",
            Role.BAC_SECRETARIAT,
            json={"scheduledAt": "2025-03-10T10:00:00", "bidOpeningAt": "2025-03-24T10:00:00"},
        )
        assert resp.status_code == 201, resp.get_json()

        with app.app_context():
            types = {r.type: r.due_at for r in Reminder.query.filter_by(case_id=case_id)}
            assert types == {
                ReminderType.PRE_BID_CONF: datetime(2025, 3, 10, 10, 0),
                ReminderType.BID_OPENING: datetime(2025, 3, 24, 10, 0),
            }
            assert db.session.get(ProcurementCase, case_id).current_state is CaseState.PRE_BID_CONF

    def test_past_dates_not_scheduled(self, app, api, new_case):
        case_id = new_case(method="PUBLIC_BIDDING")
        resp = api("post", f"/api/cases/{case_id}/pre-bid", Role.BAC_SECRETARIAT, json={"scheduledAt": "2024-01-01"})
        assert resp.status_code == 201
        with app.app_context():
            assert Reminder.query.filter_by(case_id=case_id).count() == 0


class TestStageChanges:
    def _pre_bid(self, api, case_id):
        resp = api(
            "post",
            f"/api/cases/{case_id}/pre-bid",
            Role.BAC_SECRETARIAT,
            json={"scheduledAt": "2025-03-10T10:00:00", "bidOpeningAt": "2025-03-24T10:00:00"},
        )
        assert resp.status_code == 201, resp.get_json()

    def test_deleting_pre_bid_cancels_its_reminders(self, app, api, new_case, notifier):
        case_id = new_case(method="PUBLIC_BIDDING")
        self._pre_bid(api, case_id)

        resp = api("delete", f"/api/cases/{case_id}/pre-bid", Role.ADMIN, json={"reason": "conference cancelled"})
        assert resp.status_code == 200, resp.get_json()

        with app.app_context():
            assert Reminder.query.filter_by(case_id=case_id).count() == 0
            assert sweep_due(datetime(2025, 4, 1)) == 0
        assert notifier.sent == []

    def test_deleting_ntp_keeps_sent_reminders(self, app, api, new_case):
        case_id = new_case()
        with app.app_context():
            db.session.get(ProcurementCase, case_id).current_state = CaseState.CONTRACT
            sent = schedule(case_id, ReminderType.DELIVERY_DUE, FIXED_NOW - timedelta(days=1))
            sent.sent_at = FIXED_NOW - timedelta(days=1)
            db.session.commit()
            sent_id = sent.id

        assert api("post", f"/api/cases/{case_id}/contract", Role.PROCUREMENT_MANAGER, json={"contractNo": "C-1"}).status_code == 201
        resp = api("post", f"/api/cases/{case_id}/ntp", Role.PROCUREMENT_MANAGER, json={"issuedAt": "2025-03-01T00:00:00"})
        assert resp.status_code == 201, resp.get_json()
        with app.app_context():
            assert Reminder.query.filter_by(case_id=case_id, sent_at=None).count() == 1

        resp = api("delete", f"/api/cases/{case_id}/ntp", Role.ADMIN, json={"reason": "wrong supplier"})
        assert resp.status_code == 200, resp.get_json()
        with app.app_context():
            assert [r.id for r in Reminder.query.filter_by(case_id=case_id)] == [sent_id]

    def test_patch_moves_bid_opening_only(self, app, api, new_case):
        case_id = new_case(method="PUBLIC_BIDDING")
        self._pre_bid(api, case_id)

        resp = api(
            "patch",
            f"/api/cases/{case_id}/pre-bid",
            Role.BAC_SECRETARIAT,
            json={"bidOpeningAt": "2025-03-31T10:00:00", "reason": "opening moved"},
        )
        assert resp.status_code == 200, resp.get_json()

        with app.app_context():
            types = {r.type: r.due_at for r in Reminder.query.filter_by(case_id=case_id)}
            assert types == {
                ReminderType.PRE_BID_CONF: datetime(2025, 3, 10, 10, 0),
                ReminderType.BID_OPENING: datetime(2025, 3, 31, 10, 0),
            }
