import logging
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from config import get_settings
from database import Base, engine, get_db, session_scope
from errors import AuthenticationError, ServiceError
from models import DEFAULT_CATEGORY_OWNER, TransactionType
from schemas import (
    CategoryIn,
    ExpenseIn,
    SavingsPlanIn,
    SavingsPlanUpdate,
    TransactionIn,
)
from services import (
    CategoryService,
    CategorySummarizer,
    ExpenseRecorder,
    SavingsPlanService,
    TransactionAggregator,
    TransactionFilters,
    TransactionService,
)

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Savings Planner")

STATUS_BY_TAG = {
    "validation": 400,
    "malformed_timestamp": 400,
    "unauthenticated": 401,
    "permission": 403,
    "not_found": 404,
    "conflict": 409,
    "dependency": 503,
}


def ok(data: Any, status_code: int = 200) -> JSONResponse:
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True, mode="json")
    elif isinstance(data, list):
        data = [
            item.model_dump(by_alias=True, mode="json")
            if isinstance(item, BaseModel)
            else item
            for item in data
        ]
    return JSONResponse(status_code=status_code, content={"success": True, "data": data})


def error_response(tag: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_BY_TAG.get(tag, 500),
        content={"success": False, "error": tag, "message": message},
    )


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.tag == "dependency":
        logger.error(f"dependency failure on {request.url.path}: {exc.message}")
    return error_response(exc.tag, exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return error_response("validation", "; ".join(problems) or "Invalid request")


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise AuthenticationError("Missing X-User-Id header")
    if user_id == DEFAULT_CATEGORY_OWNER:
        # Reserved for the built-in categories.
        raise AuthenticationError("Invalid user id")
    return user_id


@app.on_event("startup")
def startup_event():
    Base.metadata.create_all(bind=engine)
    with session_scope() as session:
        CategoryService(session, DEFAULT_CATEGORY_OWNER).seed_defaults()


@app.post("/api/savings")
def create_savings_plan(
    payload: SavingsPlanIn,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    plan = SavingsPlanService(db, user_id).create(payload)
    return ok(plan, status_code=201)


@app.get("/api/savings/current")
def current_savings_plan(
    user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    return ok(SavingsPlanService(db, user_id).get_current())


@app.get("/api/savings/history")
def savings_plan_history(
    user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    return ok(SavingsPlanService(db, user_id).history())


@app.post("/api/savings/expense")
def record_expense(
    payload: ExpenseIn,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return ok(ExpenseRecorder(db, user_id).record(payload))


@app.put("/api/savings/{plan_id}")
def update_savings_plan(
    plan_id: str,
    payload: SavingsPlanUpdate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return ok(SavingsPlanService(db, user_id).update(plan_id, payload))


@app.delete("/api/savings/{plan_id}")
def delete_savings_plan(
    plan_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    SavingsPlanService(db, user_id).delete(plan_id)
    return ok({"id": plan_id})


@app.post("/api/transactions")
def create_transaction(
    payload: TransactionIn,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return ok(TransactionService(db, user_id).create(payload), status_code=201)


@app.get("/api/transactions")
def list_transactions(
    txn_type: Optional[TransactionType] = Query(default=None, alias="type"),
    category: Optional[str] = None,
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    filters = TransactionFilters(
        type=txn_type, category=category, start=start_date, end=end_date
    )
    return ok(TransactionService(db, user_id).list(filters))


@app.get("/api/transactions/summary")
def transaction_overview(
    user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    return ok(CategorySummarizer(db, user_id).overview())


@app.get("/api/transactions/graph")
def transaction_graph(
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    period: Optional[str] = None,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return ok(TransactionAggregator(db, user_id).graph(start_date, end_date, period))


@app.get("/api/transactions/daily")
def daily_spending(
    day: Optional[str] = Query(default=None, alias="date"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return ok(TransactionAggregator(db, user_id).daily_spending(day))


@app.get("/api/transactions/categories")
def category_summary(
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return ok(CategorySummarizer(db, user_id).summarize(start_date, end_date))


@app.get("/api/transactions/by-category")
def transactions_by_category(
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    summarizer = CategorySummarizer(db, user_id)
    return ok(summarizer.category_transactions(start_date, end_date))


@app.get("/api/categories")
def list_categories(
    user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    return ok(CategoryService(db, user_id).list_all())


@app.post("/api/categories")
def create_category(
    payload: CategoryIn,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return ok(CategoryService(db, user_id).create(payload), status_code=201)
