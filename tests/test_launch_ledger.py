from sqlalchemy.orm import Session

from notifyrules.services.rules import LaunchLedger


class TestLaunchLedger:
    """Fire counting per (rule, user, course)."""

    def test_absent_count_is_zero(self, db_session: Session):
        ledger = LaunchLedger(db_session)

        assert ledger.get_fire_count(1, 2, 3) == 0
        assert ledger.has_capacity(1, 2, 3, max_fires=1) is True

    def test_record_fire_inserts_then_increments(self, db_session: Session):
        ledger = LaunchLedger(db_session)

        assert ledger.record_fire(1, 2, 3) == 1
        assert ledger.record_fire(1, 2, 3) == 2
        db_session.commit()

        assert ledger.get_fire_count(1, 2, 3) == 2

    def test_record_fire_stops_at_cap(self, db_session: Session):
        ledger = LaunchLedger(db_session)

        assert ledger.record_fire(1, 2, 3, max_fires=2) == 1
        assert ledger.record_fire(1, 2, 3, max_fires=2) == 2
        assert ledger.record_fire(1, 2, 3, max_fires=2) is None
        db_session.commit()

        assert ledger.get_fire_count(1, 2, 3) == 2
        assert ledger.has_capacity(1, 2, 3, max_fires=2) is False
        assert ledger.has_capacity(1, 2, 3, max_fires=3) is True

    def test_total_fires_sums_over_tuples(self, db_session: Session):
        ledger = LaunchLedger(db_session)
        ledger.record_fire(1, 2, 3)
        ledger.record_fire(1, 2, 3)
        ledger.record_fire(1, 5, 3)
        ledger.record_fire(9, 2, 3)
        db_session.commit()

        assert ledger.total_fires(1) == 3
        assert ledger.total_fires(42) == 0

    def test_delete_by_rule(self, db_session: Session):
        ledger = LaunchLedger(db_session)
        ledger.record_fire(1, 2, 3)
        ledger.record_fire(2, 2, 3)

        assert ledger.delete_by_rule(1) == 1
        db_session.commit()

        assert ledger.get_fire_count(1, 2, 3) == 0
        assert ledger.get_fire_count(2, 2, 3) == 1
