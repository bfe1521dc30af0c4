import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import NotFoundError, ValidationError
from models import SAVINGS_PLANS
from schemas import ExpenseIn, SavingsPlanIn
from services import ExpenseRecorder, SavingsPlanService
from store import DocumentStore


def create_april_plan(session: Session, user_id: str = "u1"):
    return SavingsPlanService(session, user_id).create(
        SavingsPlanIn(
            month="April",
            year="2024",
            fixed_income=3000,
            fixed_costs=1000,
            savings_percentage=20,
        )
    )


class InterleavingStore(DocumentStore):
    """Lets a competing expense land between our read and our write, once."""

    def __init__(self, session: Session, competitor) -> None:
        super().__init__(session)
        self.competitor = competitor
        self.fired = False

    def update(self, collection, doc_id, partial, *, expected_version=None):
        if not self.fired:
            self.fired = True
            self.competitor()
        return super().update(
            collection, doc_id, partial, expected_version=expected_version
        )


def test_recording_expenses_accumulates_spending() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        create_april_plan(session)
        recorder = ExpenseRecorder(session, "u1")

        plan = recorder.record(ExpenseIn(amount=100, category="Groceries", date="2024-04-03"))
        assert plan.current_spending == 100
        assert plan.progress == pytest.approx(6.25)

        plan = recorder.record(
            ExpenseIn(amount=50, category="Electronics", date="2024-04-04T10:00:00Z")
        )
        assert plan.current_spending == 150
        assert plan.progress == pytest.approx(150 / 1600 * 100)
        assert [entry.amount for entry in plan.spending_history] == [100, 50]
        assert plan.spending_history[1].date == "2024-04-04T10:00:00Z"


def test_interleaved_expense_is_not_lost(tmp_path) -> None:
    # Two sessions need two real connections.
    engine = create_engine(f"sqlite:///{tmp_path / 'plans.db'}")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        plan = create_april_plan(session)
        other_session = Session(engine)
        competitor = ExpenseRecorder(other_session, "u1")

        recorder = ExpenseRecorder(session, "u1")
        recorder.plans.store = InterleavingStore(
            session,
            lambda: competitor.record(
                ExpenseIn(amount=50, category="Groceries", date="2024-04-05")
            ),
        )

        updated = recorder.record(
            ExpenseIn(amount=100, category="Groceries", date="2024-04-05")
        )
        other_session.close()

        assert updated.current_spending == 150
        assert len(updated.spending_history) == 2
        stored = DocumentStore(session).get_by_id(SAVINGS_PLANS, plan.id)
        assert stored.data["currentSpending"] == 150
        assert stored.version == 3


def test_expense_without_matching_plan_is_not_found() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        create_april_plan(session)
        with pytest.raises(NotFoundError, match="No savings plan found"):
            ExpenseRecorder(session, "u1").record(
                ExpenseIn(amount=10, category="Groceries", date="2024-05-01")
            )
        with pytest.raises(NotFoundError):
            ExpenseRecorder(session, "u2").record(
                ExpenseIn(amount=10, category="Groceries", date="2024-04-01")
            )


def test_expense_input_is_validated() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        create_april_plan(session)
        with pytest.raises(ValidationError, match="Invalid date format"):
            ExpenseRecorder(session, "u1").record(
                ExpenseIn(amount=10, category="Groceries", date="next tuesday")
            )

    with pytest.raises(ValueError):
        ExpenseIn(amount=0, category="Groceries", date="2024-04-01")
    with pytest.raises(ValueError):
        ExpenseIn(amount=10, category="", date="2024-04-01")
