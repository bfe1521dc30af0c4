from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional, Union

from rapidfuzz.distance import Levenshtein
from sqlalchemy.orm import Session

from config import get_settings
from errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from models import (
    CATEGORIES,
    DEFAULT_CATEGORIES,
    DEFAULT_CATEGORY_OWNER,
    SAVINGS_PLANS,
    TRANSACTIONS,
    CategoryScope,
    GraphPeriod,
    TransactionType,
)
from periods import (
    BucketLabels,
    DateRange,
    bucket_label,
    canonical_month,
    days_in_month,
    local_day,
    local_zone,
    month_year_for,
    parse_day,
    parse_year,
    resolve_range,
)
from schemas import (
    CategoryIn,
    CategoryOut,
    CategorySummaryOut,
    CategoryTotal,
    CategoryTransactions,
    CategoryTransactionsOut,
    DailySpending,
    DailySpendingOut,
    ExpenseIn,
    GraphOut,
    SavingsPlanIn,
    SavingsPlanOut,
    SavingsPlanUpdate,
    TransactionIn,
    TransactionOut,
    TransactionOverviewOut,
)
from store import DocumentStore, DuplicateKey, StoredDocument
from timestamps import TimestampNormalizer

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PlanFigures:
    discretionary_income: float
    planned_savings: float
    budget: float
    daily_spending_limit: float


def plan_figures(
    fixed_income: float,
    fixed_costs: float,
    savings_percentage: float,
    days: int,
) -> PlanFigures:
    discretionary_income = fixed_income - fixed_costs
    planned_savings = discretionary_income * savings_percentage / 100
    budget = discretionary_income - planned_savings
    return PlanFigures(
        discretionary_income=discretionary_income,
        planned_savings=planned_savings,
        budget=budget,
        daily_spending_limit=budget / days,
    )


def spending_progress(current_spending: float, budget: float) -> float:
    if budget <= 0:
        return 0.0
    return current_spending / budget * 100


def figures_for_plan(plan: dict[str, Any]) -> PlanFigures:
    return plan_figures(
        float(plan["fixedIncome"]),
        float(plan["fixedCosts"]),
        float(plan["savingsPercentage"]),
        days_in_month(plan["month"], plan["year"]),
    )


def plan_out(doc: StoredDocument) -> SavingsPlanOut:
    return SavingsPlanOut.model_validate(doc.as_dict())


def transaction_out(record: dict[str, Any], instant: datetime) -> TransactionOut:
    return TransactionOut.model_validate({**record, "createdAt": instant})


def _amount(record: dict[str, Any]) -> float:
    try:
        return float(record.get("amount") or 0)
    except (TypeError, ValueError):
        logger.warning(f"treating unreadable amount as 0: id={record.get('id')}")
        return 0.0


def _user_transactions(
    store: DocumentStore, user_id: str, txn_type: Optional[TransactionType] = None
) -> list[dict[str, Any]]:
    filters: dict[str, Any] = {"userId": user_id}
    if txn_type is not None:
        filters["type"] = txn_type.value
    return [doc.as_dict() for doc in store.query_equals(TRANSACTIONS, filters)]


def _plan_key(user_id: str, month: str, year: str) -> str:
    return f"{user_id}:{month}:{year}"


def _category_key(user_id: str, name: str) -> str:
    return f"{user_id}:{name.strip().lower()}"


class SavingsPlanService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.store = DocumentStore(session)

    def find_for_period(self, month: str, year: str) -> Optional[StoredDocument]:
        docs = self.store.query_equals(
            SAVINGS_PLANS,
            {"userId": self.user_id, "month": month, "year": year},
            limit=1,
        )
        return docs[0] if docs else None

    def get_current(self, now: Optional[datetime] = None) -> SavingsPlanOut:
        tz = local_zone()
        now = now.astimezone(tz) if now and now.tzinfo else (now or datetime.now(tz))
        month, year = month_year_for(now)
        doc = self.find_for_period(month, year)
        if doc is None:
            raise NotFoundError("No active savings plan found for the current month")
        return plan_out(doc)

    def create(self, data: SavingsPlanIn) -> SavingsPlanOut:
        month = canonical_month(data.month)
        year = str(parse_year(data.year))
        if self.find_for_period(month, year) is not None:
            raise ConflictError("A savings plan already exists for this month and year")

        figures = plan_figures(
            data.fixed_income,
            data.fixed_costs,
            data.savings_percentage,
            days_in_month(month, year),
        )
        now = utc_now()
        plan = {
            "userId": self.user_id,
            "month": month,
            "year": year,
            "fixedIncome": data.fixed_income,
            "fixedCosts": data.fixed_costs,
            "savingsPercentage": data.savings_percentage,
            "currentSpending": 0.0,
            "dailySpendingLimit": figures.daily_spending_limit,
            "progress": 0.0,
            "spendingHistory": [],
            "createdAt": now,
            "updatedAt": now,
        }
        try:
            plan_id = self.store.add(
                SAVINGS_PLANS, plan, key=_plan_key(self.user_id, month, year)
            )
        except DuplicateKey as exc:
            raise ConflictError(
                "A savings plan already exists for this month and year"
            ) from exc
        logger.info(
            f"savings_plan_created: user={self.user_id} plan={plan_id} "
            f"period={month} {year}"
        )
        return plan_out(StoredDocument(id=plan_id, data=plan, version=1))

    def update(self, plan_id: str, data: SavingsPlanUpdate) -> SavingsPlanOut:
        changes = data.model_dump(by_alias=True, exclude_none=True)
        if not changes:
            raise ValidationError(
                "At least one field (fixedIncome, fixedCosts, or savingsPercentage) "
                "must be provided"
            )

        def apply(plan: dict[str, Any]) -> dict[str, Any]:
            figures = figures_for_plan({**plan, **changes})
            current_spending = float(plan.get("currentSpending") or 0)
            return {
                **changes,
                "dailySpendingLimit": figures.daily_spending_limit,
                "progress": spending_progress(current_spending, figures.budget),
                "updatedAt": utc_now(),
            }

        updated = self.mutate(plan_id, apply)
        logger.info(
            f"savings_plan_updated: user={self.user_id} plan={plan_id} "
            f"fields={sorted(changes)}"
        )
        return plan_out(updated)

    def delete(self, plan_id: str) -> None:
        self._owned(plan_id)
        if not self.store.delete(SAVINGS_PLANS, plan_id):
            raise NotFoundError("Savings plan not found")
        logger.info(f"savings_plan_deleted: user={self.user_id} plan={plan_id}")

    def history(self) -> list[SavingsPlanOut]:
        docs = self.store.query_ordered(
            SAVINGS_PLANS,
            {"userId": self.user_id},
            [("year", "desc"), ("createdAt", "desc")],
        )
        return [plan_out(doc) for doc in docs]

    def mutate(
        self,
        plan_id: str,
        compute: Callable[[dict[str, Any]], dict[str, Any]],
    ) -> StoredDocument:
        """
        Apply ``compute`` to the stored plan as a versioned conditional write.
        ``compute`` receives the plan body and returns the fields to merge; it
        is re-run against a fresh read whenever another writer got in first.
        """
        attempts = get_settings().plan_write_attempts
        for attempt in range(1, attempts + 1):
            current = self._owned(plan_id)
            changes = compute(current.data)
            updated = self.store.update(
                SAVINGS_PLANS, plan_id, changes, expected_version=current.version
            )
            if updated is not None:
                return updated
            logger.info(
                f"savings_plan_write_conflict: plan={plan_id} attempt={attempt} "
                f"version={current.version}"
            )
        raise ConflictError("Savings plan was modified concurrently, please retry")

    def _owned(self, plan_id: str) -> StoredDocument:
        doc = self.store.get_by_id(SAVINGS_PLANS, plan_id)
        if doc is None:
            raise NotFoundError("Savings plan not found")
        if doc.data.get("userId") != self.user_id:
            raise PermissionDeniedError(
                "You do not have permission to modify this savings plan"
            )
        return doc


class ExpenseRecorder:
    def __init__(self, session: Session, user_id: str) -> None:
        self.user_id = user_id
        self.plans = SavingsPlanService(session, user_id)

    def record(self, data: ExpenseIn) -> SavingsPlanOut:
        month, year = month_year_for(local_day(data.date))
        plan = self.plans.find_for_period(month, year)
        if plan is None:
            raise NotFoundError("No savings plan found for the expense date")

        entry = {"date": data.date, "amount": data.amount, "category": data.category}

        def append(current: dict[str, Any]) -> dict[str, Any]:
            spending = float(current.get("currentSpending") or 0) + data.amount
            budget = figures_for_plan(current).budget
            return {
                "spendingHistory": [*(current.get("spendingHistory") or []), entry],
                "currentSpending": spending,
                "progress": spending_progress(spending, budget),
                "updatedAt": utc_now(),
            }

        updated = self.plans.mutate(plan.id, append)
        logger.info(
            f"expense_recorded: user={self.user_id} plan={plan.id} "
            f"amount={data.amount} category={data.category}"
        )
        return plan_out(updated)


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category: Optional[str] = None
    start: Optional[Union[date, str]] = None
    end: Optional[Union[date, str]] = None


class CategoryService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.store = DocumentStore(session)

    def seed_defaults(self) -> int:
        existing = {
            doc.data.get("name")
            for doc in self.store.query_equals(
                CATEGORIES, {"userId": DEFAULT_CATEGORY_OWNER}
            )
        }
        created = 0
        for name, details in DEFAULT_CATEGORIES.items():
            if name in existing:
                continue
            doc = {
                "userId": DEFAULT_CATEGORY_OWNER,
                "name": name,
                "icon": details["icon"],
                "color": details["color"],
                "type": details["type"],
                "scope": CategoryScope.default.value,
                "createdAt": utc_now(),
            }
            try:
                self.store.add(
                    CATEGORIES, doc, key=_category_key(DEFAULT_CATEGORY_OWNER, name)
                )
            except DuplicateKey:
                # Another worker seeded it first.
                continue
            created += 1
        if created:
            logger.info(f"default_categories_seeded: created={created}")
        return created

    def _docs(self, owner: str) -> list[StoredDocument]:
        docs = self.store.query_equals(CATEGORIES, {"userId": owner})
        return sorted(docs, key=lambda doc: str(doc.data.get("name", "")).lower())

    def list_all(self) -> list[CategoryOut]:
        docs = self._docs(DEFAULT_CATEGORY_OWNER)
        if self.user_id != DEFAULT_CATEGORY_OWNER:
            docs.extend(self._docs(self.user_id))
        return [self._to_out(doc) for doc in docs]

    def create(self, data: CategoryIn) -> CategoryOut:
        name = data.name.strip()
        for doc in self._docs(self.user_id):
            if str(doc.data.get("name", "")).lower() == name.lower():
                raise ConflictError("Category already exists")

        doc = {
            "userId": self.user_id,
            "name": name,
            "icon": data.icon,
            "color": data.color,
            "type": data.type.value,
            "scope": CategoryScope.user.value,
            "createdAt": utc_now(),
        }
        try:
            category_id = self.store.add(
                CATEGORIES, doc, key=_category_key(self.user_id, name)
            )
        except DuplicateKey as exc:
            raise ConflictError("Category already exists") from exc
        return self._to_out(StoredDocument(id=category_id, data=doc, version=1))

    def details_by_name(self) -> dict[str, CategoryOut]:
        # User categories shadow defaults of the same name.
        return {category.name: category for category in self.list_all()}

    def resolve(self, name: str) -> str:
        """
        Map a free-form category key onto a known category name.
        Exact (case-insensitive) matches win, then a unique match within one
        edit; anything else is kept as the caller wrote it.
        """
        clean = name.strip()
        if not clean:
            raise ValidationError("Category is required")
        names = sorted({category.name for category in self.list_all()})
        input_lower = clean.lower()
        for candidate in names:
            if candidate.lower() == input_lower:
                return candidate

        best_distance: Optional[int] = None
        best: list[str] = []
        for candidate in names:
            dist = int(Levenshtein.distance(input_lower, candidate.lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [candidate]
            elif dist == best_distance:
                best.append(candidate)

        if best_distance is not None and best_distance <= 1:
            if len(best) > 1:
                options = ", ".join(best)
                raise ValidationError(
                    f"Category '{clean}' is ambiguous; matches: {options}"
                )
            return best[0]
        return clean

    @staticmethod
    def _to_out(doc: StoredDocument) -> CategoryOut:
        data = doc.data
        owner = str(data.get("userId", ""))
        scope = data.get("scope") or (
            CategoryScope.default.value
            if owner == DEFAULT_CATEGORY_OWNER
            else CategoryScope.user.value
        )
        return CategoryOut.model_validate(
            {
                **data,
                "id": doc.id,
                "userId": owner,
                "type": data.get("type") or TransactionType.expense.value,
                "scope": scope,
            }
        )


class TransactionService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.store = DocumentStore(session)
        self.normalizer = TimestampNormalizer()

    def create(self, data: TransactionIn) -> TransactionOut:
        category = CategoryService(self.session, self.user_id).resolve(data.category)
        txn = {
            "userId": self.user_id,
            "type": data.type.value,
            "category": category,
            "amount": data.amount,
            "description": data.description or "",
            "paymentMethod": data.payment_method or "Other",
            "createdAt": utc_now(),
        }
        txn_id = self.store.add(TRANSACTIONS, txn)
        logger.info(
            f"transaction_created: user={self.user_id} id={txn_id} "
            f"type={data.type.value} amount={data.amount}"
        )
        return TransactionOut.model_validate({"id": txn_id, **txn})

    def list(self, filters: Optional[TransactionFilters] = None) -> list[TransactionOut]:
        filters = filters or TransactionFilters()
        date_range = resolve_range(filters.start, filters.end)
        tz = local_zone()
        records = _user_transactions(self.store, self.user_id, filters.type)
        items: list[TransactionOut] = []
        for record, instant in self.normalizer.iter_valid(records):
            if filters.category and record.get("category") != filters.category:
                continue
            if not date_range.contains(instant, tz):
                continue
            items.append(transaction_out(record, instant))
        items.sort(key=lambda txn: txn.created_at, reverse=True)
        return items


def _parse_period(period: Union[GraphPeriod, str, None]) -> GraphPeriod:
    if period is None or period == "":
        return GraphPeriod.daily
    try:
        return GraphPeriod(period)
    except ValueError as exc:
        raise ValidationError("Period must be daily, monthly, or yearly") from exc


class TransactionAggregator:
    def __init__(self, session: Session, user_id: str) -> None:
        self.user_id = user_id
        self.store = DocumentStore(session)
        self.normalizer = TimestampNormalizer()

    def graph(
        self,
        start_date: Union[date, str, None],
        end_date: Union[date, str, None],
        period: Union[GraphPeriod, str, None] = GraphPeriod.daily,
    ) -> GraphOut:
        granularity = _parse_period(period)
        date_range = resolve_range(start_date, end_date, required=True)
        tz = local_zone()

        labels = list(BucketLabels(granularity, date_range.start, date_range.end))
        buckets = {label: {"income": 0.0, "expense": 0.0} for label in labels}

        records = _user_transactions(self.store, self.user_id)
        ignored = 0
        for record, instant in self.normalizer.iter_valid(records):
            if not date_range.contains(instant, tz):
                continue
            bucket = buckets.get(bucket_label(instant.astimezone(tz), granularity))
            if bucket is None:
                ignored += 1
                continue
            txn_type = record.get("type")
            if txn_type == TransactionType.income.value:
                bucket["income"] += _amount(record)
            elif txn_type == TransactionType.expense.value:
                bucket["expense"] += _amount(record)

        if ignored:
            logger.info(f"graph_unbucketed_transactions: user={self.user_id} count={ignored}")

        income_data = [buckets[label]["income"] for label in labels]
        expense_data = [buckets[label]["expense"] for label in labels]
        return GraphOut(
            period=granularity,
            dates=labels,
            income_data=income_data,
            expense_data=expense_data,
            total_income=sum(income_data),
            total_expenses=sum(expense_data),
        )

    def daily_spending(self, day: Union[date, str, None] = None) -> DailySpendingOut:
        tz = local_zone()
        target = parse_day(day, "day") or datetime.now(tz).date()
        date_range = DateRange(target, target)

        groups: dict[str, list[TransactionOut]] = {}
        records = _user_transactions(self.store, self.user_id, TransactionType.expense)
        for record, instant in self.normalizer.iter_valid(records):
            if not date_range.contains(instant, tz):
                continue
            key = instant.astimezone(tz).date().isoformat()
            groups.setdefault(key, []).append(transaction_out(record, instant))

        days = [
            DailySpending(
                date=key,
                total_amount=sum(txn.amount for txn in txns),
                transactions=txns,
            )
            for key, txns in sorted(groups.items(), reverse=True)
        ]
        lower, upper = date_range.bounds(tz)
        return DailySpendingOut(
            daily_spending=days,
            total_transactions=sum(len(d.transactions) for d in days),
            total_spending=sum(d.total_amount for d in days),
            range_from=lower,
            range_to=upper,
        )


class CategorySummarizer:
    def __init__(self, session: Session, user_id: str) -> None:
        self.user_id = user_id
        self.store = DocumentStore(session)
        self.normalizer = TimestampNormalizer()
        self.categories = CategoryService(session, user_id)

    def _expenses(
        self, start_date: Union[date, str, None], end_date: Union[date, str, None]
    ) -> list[tuple[dict[str, Any], datetime]]:
        date_range = resolve_range(start_date, end_date)
        tz = local_zone()
        records = _user_transactions(self.store, self.user_id, TransactionType.expense)
        return [
            (record, instant)
            for record, instant in self.normalizer.iter_valid(records)
            if date_range.contains(instant, tz)
        ]

    def _totals(self, records: Iterable[dict[str, Any]]) -> list[CategoryTotal]:
        sums: dict[str, list[float]] = {}
        for record in records:
            key = record.get("category") or UNCATEGORIZED
            entry = sums.setdefault(key, [0.0, 0])
            entry[0] += _amount(record)
            entry[1] += 1

        total = sum(amount for amount, _ in sums.values())
        details = self.categories.details_by_name()
        rows = []
        for name, (amount, count) in sums.items():
            category = details.get(name)
            rows.append(
                CategoryTotal(
                    category=name,
                    amount=amount,
                    count=int(count),
                    percentage=(amount / total * 100) if total > 0 else 0.0,
                    icon=category.icon if category else None,
                    color=category.color if category else None,
                )
            )
        rows.sort(key=lambda row: (-row.amount, row.category))
        return rows

    def summarize(
        self,
        start_date: Union[date, str, None] = None,
        end_date: Union[date, str, None] = None,
    ) -> CategorySummaryOut:
        rows = self._totals(record for record, _ in self._expenses(start_date, end_date))
        return CategorySummaryOut(
            categories=rows,
            total_expenses=sum(row.amount for row in rows),
            category_count=len(rows),
        )

    def category_transactions(
        self,
        start_date: Union[date, str, None] = None,
        end_date: Union[date, str, None] = None,
    ) -> CategoryTransactionsOut:
        groups: dict[str, list[TransactionOut]] = {}
        for record, instant in self._expenses(start_date, end_date):
            key = record.get("category") or UNCATEGORIZED
            groups.setdefault(key, []).append(
                transaction_out({**record, "category": key}, instant)
            )

        spending = []
        for name, txns in groups.items():
            txns.sort(key=lambda txn: txn.created_at, reverse=True)
            spending.append(
                CategoryTransactions(
                    category=name,
                    total_amount=sum(txn.amount for txn in txns),
                    transaction_count=len(txns),
                    transactions=txns,
                )
            )
        spending.sort(key=lambda group: (-group.total_amount, group.category))
        return CategoryTransactionsOut(
            category_spending=spending,
            total_categories=len(spending),
            total_transactions=sum(group.transaction_count for group in spending),
            total_spending=sum(group.total_amount for group in spending),
        )

    def overview(self) -> TransactionOverviewOut:
        total_income = 0.0
        count = 0
        expenses: list[dict[str, Any]] = []
        records = _user_transactions(self.store, self.user_id)
        for record, _instant in self.normalizer.iter_valid(records):
            count += 1
            if record.get("type") == TransactionType.income.value:
                total_income += _amount(record)
            elif record.get("type") == TransactionType.expense.value:
                expenses.append(record)

        rows = self._totals(expenses)
        total_expenses = sum(row.amount for row in rows)
        return TransactionOverviewOut(
            available_balance=total_income - total_expenses,
            total_income=total_income,
            total_expenses=total_expenses,
            transaction_count=count,
            category_count=len(rows),
            category_summary=rows,
        )
