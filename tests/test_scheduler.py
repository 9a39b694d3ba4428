from contextlib import contextmanager
from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import AccountType, RecurringFrequency, TransactionType
from scheduler import SchedulerManager, posting_jobs
from schemas import AccountIn, RecurringRuleIn
from services import AccountService, RecurringRuleService


def test_run_posting_catches_up_through_the_session_factory() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account = AccountService(session, 1).create(
            AccountIn(name="Checking", account_type=AccountType.checking)
        )
        RecurringRuleService(session, 1).create(
            RecurringRuleIn(
                account_id=account.id,
                transaction_type=TransactionType.income,
                amount=Decimal("1.00"),
                description="Yearly bonus",
                frequency=RecurringFrequency.yearly,
                start_date=date(2020, 1, 1),
            )
        )

    @contextmanager
    def sessions():
        with Session(engine) as session:
            yield session
            session.commit()

    manager = SchedulerManager(sessions=sessions)
    assert manager.run_posting("test") >= 1
    assert manager.run_posting("test") == 0


def test_posting_jobs_are_daily_and_hourly() -> None:
    jobs = posting_jobs("Asia/Jakarta")
    assert [job_id for job_id, _, _ in jobs] == [
        "recurring_daily",
        "recurring_hourly_safety",
    ]
    assert [grace for _, _, grace in jobs] == [3600, 300]
