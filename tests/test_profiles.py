from datetime import date, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import NotFound, ValidationFailed
from models import AccountType, RecurringFrequency, TransactionType
from recurrence import RecurringEngine
from schemas import AccountIn, ProfileIn, ProfilePatch, RecurringRuleIn
from services import AccountService, ProfileService, RecurringRuleService


def _profile(**overrides) -> ProfileIn:
    data = {"display_name": "Sari", "email": "Sari@Example.com"}
    data.update(overrides)
    return ProfileIn(**data)


def test_profile_defaults_and_lookup() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        profiles = ProfileService(session, 1)
        assert profiles.find() is None
        with pytest.raises(NotFound, match="Profile not found"):
            profiles.get()

        profile = profiles.create(_profile())
        assert (profile.currency, profile.locale, profile.timezone) == (
            "IDR",
            "id-ID",
            "Asia/Jakarta",
        )
        assert profile.email == "sari@example.com"
        assert profiles.get().id == profile.id

        with pytest.raises(NotFound):
            ProfileService(session, 2).get()
        with pytest.raises(ValidationFailed, match="already exists"):
            profiles.create(_profile())


def test_account_currency_follows_the_profile() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ProfileService(session, 1).create(_profile(currency="eur"))
        accounts = AccountService(session, 1)
        wallet = accounts.create(AccountIn(name="Wallet", account_type=AccountType.cash))
        assert wallet.currency == "EUR"

        explicit = accounts.create(
            AccountIn(name="Trip", account_type=AccountType.cash, currency="usd")
        )
        assert explicit.currency == "USD"

        no_profile = AccountService(session, 2).create(
            AccountIn(name="Wallet", account_type=AccountType.cash)
        )
        assert no_profile.currency == "IDR"


def test_profile_patch_semantics() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        profiles = ProfileService(session, 1)
        profiles.create(_profile())

        updated = profiles.update(ProfilePatch(timezone="Europe/Berlin", currency="eur"))
        assert updated.timezone == "Europe/Berlin"
        assert updated.currency == "EUR"
        assert updated.display_name == "Sari"

        with pytest.raises(ValidationFailed, match="timezone cannot be null"):
            profiles.update(ProfilePatch(timezone=None))
        with pytest.raises(ValidationFailed, match="Unknown timezone: Mars/Olympus"):
            profiles.update(ProfilePatch(timezone="Mars/Olympus"))
        assert profiles.get().timezone == "Europe/Berlin"

        with pytest.raises(ValidationError):
            ProfilePatch(email="new@example.com")


def test_invalid_email_is_rejected() -> None:
    with pytest.raises(ValidationError):
        _profile(email="not-an-email")


def test_today_uses_the_profile_timezone() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ProfileService(session, 1).create(_profile(timezone="Pacific/Kiritimati"))
        before = datetime.now(ZoneInfo("Pacific/Kiritimati")).date()
        today = ProfileService(session, 1).today()
        after = datetime.now(ZoneInfo("Pacific/Kiritimati")).date()
        assert today in (before, after)


def test_recurring_posting_defaults_to_each_owners_today() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ProfileService(session, 1).create(_profile(timezone="America/New_York"))
        account = AccountService(session, 1).create(
            AccountIn(name="Checking", account_type=AccountType.checking)
        )
        RecurringRuleService(session, 1).create(
            RecurringRuleIn(
                account_id=account.id,
                transaction_type=TransactionType.income,
                amount=Decimal("5.00"),
                description="Allowance",
                frequency=RecurringFrequency.yearly,
                start_date=date(2020, 1, 1),
            )
        )

        engine_run = RecurringEngine(session)
        posted = engine_run.post_due_rules()
        assert posted >= 5
        assert engine_run.post_due_rules() == 0
        rule = RecurringRuleService(session, 1).list()[0]
        assert rule.next_occurrence > ProfileService(session, 1).today()
