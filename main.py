import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, Response, StreamingResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from csv_utils import export_transactions, parse_import_csv
from demo import DemoDataService
from database import SessionLocal, init_db
from errors import ErrorKind, LedgerError
from importer import ImportService
from models import CategoryType, GoalStatus, TransactionType
from periods import resolve_period
from recurrence import RecurringEngine
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    AccountPatch,
    BudgetIn,
    BudgetOut,
    BudgetPatch,
    CategoryIn,
    CategoryOut,
    CategoryPatch,
    ContributionIn,
    DashboardOut,
    DemoDataOut,
    FinancialSummary,
    ImportRequest,
    ImportResultOut,
    ProfileIn,
    ProfileOut,
    ProfilePatch,
    RecurringRuleIn,
    RecurringRuleOut,
    RecurringRulePatch,
    SavingsGoalIn,
    SavingsGoalOut,
    SavingsGoalPatch,
    TransactionIn,
    TransactionOut,
    TransactionPage,
    TransactionPatch,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    ProfileService,
    RecurringRuleService,
    SavingsGoalService,
    TagService,
    TransactionFilters,
    TransactionService,
)
from summary import SummaryService

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")

STATUS_BY_KIND = {
    ErrorKind.not_found: 404,
    ErrorKind.validation_failed: 400,
    ErrorKind.constraint_violation: 409,
    ErrorKind.duplicate_detected: 409,
}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_user_id(x_user_id: Optional[int] = Header(default=None)) -> int:
    if x_user_id is None or x_user_id <= 0:
        raise HTTPException(status_code=400, detail="X-User-Id header is required")
    return x_user_id


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    init_db()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError):
    return JSONResponse(
        status_code=STATUS_BY_KIND[exc.kind],
        content={"detail": exc.message, "kind": exc.kind.value},
    )


@app.exception_handler(SQLAlchemyError)
def persistence_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(
        f"persistence_error: method={request.method} path={request.url.path}",
        exc_info=exc,
    )
    return JSONResponse(status_code=500, content={"detail": "Persistence failure"})


def filters_from_query(
    type: Optional[TransactionType] = None,
    account_id: Optional[int] = None,
    category_id: Optional[int] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    q: Optional[str] = None,
    tag: Optional[str] = None,
) -> TransactionFilters:
    return TransactionFilters(
        transaction_type=type,
        account_id=account_id,
        category_id=category_id,
        start_date=start,
        end_date=end,
        query=q,
        tag=tag,
    )


# Profile


@app.get("/profile", response_model=ProfileOut)
def get_profile(user_id: int = Depends(get_user_id), db: Session = Depends(get_db)):
    return ProfileOut.model_validate(ProfileService(db, user_id).get())


@app.post("/profile", response_model=ProfileOut, status_code=201)
def create_profile(
    data: ProfileIn, user_id: int = Depends(get_user_id), db: Session = Depends(get_db)
):
    return ProfileOut.model_validate(ProfileService(db, user_id).create(data))


@app.patch("/profile", response_model=ProfileOut)
def update_profile(
    patch: ProfilePatch,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return ProfileOut.model_validate(ProfileService(db, user_id).update(patch))


@app.post("/demo-data", response_model=DemoDataOut, status_code=201)
def create_demo_data(user_id: int = Depends(get_user_id), db: Session = Depends(get_db)):
    DemoDataService(db, user_id).create()
    return DemoDataOut(success=True, message="Demo data created successfully")


# Accounts


@app.get("/accounts", response_model=list[AccountOut])
def list_accounts(user_id: int = Depends(get_user_id), db: Session = Depends(get_db)):
    return [AccountOut.model_validate(a) for a in AccountService(db, user_id).list_all()]


@app.post("/accounts", response_model=AccountOut, status_code=201)
def create_account(
    data: AccountIn, user_id: int = Depends(get_user_id), db: Session = Depends(get_db)
):
    return AccountOut.model_validate(AccountService(db, user_id).create(data))


@app.get("/accounts/{account_id}", response_model=AccountOut)
def get_account(
    account_id: int, user_id: int = Depends(get_user_id), db: Session = Depends(get_db)
):
    return AccountOut.model_validate(AccountService(db, user_id).get(account_id))


@app.patch("/accounts/{account_id}", response_model=AccountOut)
def update_account(
    account_id: int,
    patch: AccountPatch,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return AccountOut.model_validate(AccountService(db, user_id).update(account_id, patch))


@app.delete("/accounts/{account_id}", status_code=204)
def delete_account(
    account_id: int, user_id: int = Depends(get_user_id), db: Session = Depends(get_db)
):
    AccountService(db, user_id).delete(account_id)
    return Response(status_code=204)


@app.post("/accounts/{account_id}/recalculate", response_model=AccountOut)
def recalculate_account(
    account_id: int, user_id: int = Depends(get_user_id), db: Session = Depends(get_db)
):
    account = AccountService(db, user_id).recalculate_balance(account_id)
    return AccountOut.model_validate(account)


# Categories and tags


@app.get("/categories", response_model=list[CategoryOut])
def list_categories(
    type: Optional[CategoryType] = None,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    categories = CategoryService(db, user_id).list_all(type)
    return [CategoryOut.model_validate(c) for c in categories]


@app.post("/categories", response_model=CategoryOut, status_code=201)
def create_category(
    data: CategoryIn, user_id: int = Depends(get_user_id), db: Session = Depends(get_db)
):
    return CategoryOut.model_validate(CategoryService(db, user_id).create(data))


@app.patch("/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    patch: CategoryPatch,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, user_id).update(category_id, patch)
    return CategoryOut.model_validate(category)


@app.delete("/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int, user_id: int = Depends(get_user_id), db: Session = Depends(get_db)
):
    CategoryService(db, user_id).soft_delete(category_id)
    return Response(status_code=204)


@app.get("/tags")
def list_tags(user_id: int = Depends(get_user_id), db: Session = Depends(get_db)):
    return [{"id": t.id, "name": t.name} for t in TagService(db, user_id).list_all()]


# Transactions


@app.get("/transactions", response_model=TransactionPage)
def list_transactions(
    filters: TransactionFilters = Depends(filters_from_query),
    limit: int = 50,
    offset: int = 0,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    limit = min(max(limit, 1), 200)
    offset = max(offset, 0)
    items, total = TransactionService(db, user_id).list(filters, limit, offset)
    return TransactionPage(
        items=[TransactionOut.model_validate(t) for t in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@app.post("/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    data: TransactionIn,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return TransactionOut.model_validate(TransactionService(db, user_id).create(data))


@app.get("/transactions/deleted", response_model=list[TransactionOut])
def deleted_transactions(
    user_id: int = Depends(get_user_id), db: Session = Depends(get_db)
):
    txns = TransactionService(db, user_id).deleted()
    return [TransactionOut.model_validate(t) for t in txns]


@app.get("/transactions/export.csv")
def export_transactions_endpoint(
    filters: TransactionFilters = Depends(filters_from_query),
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    transactions = TransactionService(db, user_id).all_matching(filters)
    csv_text = export_transactions(transactions)
    today = ProfileService(db, user_id).today()
    filename = f"transactions_{today.isoformat()}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/transactions/import", response_model=ImportResultOut)
def import_transactions(
    request: ImportRequest,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    result = ImportService(db, user_id).import_rows(
        request.rows, request.default_account_id
    )
    return ImportResultOut(
        imported=result.imported, skipped=result.skipped, errors=result.errors
    )


@app.post("/transactions/import/csv", response_model=ImportResultOut)
async def import_transactions_csv(
    file: UploadFile = File(...),
    default_account_id: Optional[int] = Form(default=None),
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    try:
        content = (await file.read()).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="CSV must be UTF-8") from exc
    rows = parse_import_csv(content)
    result = ImportService(db, user_id).import_rows(rows, default_account_id)
    return ImportResultOut(
        imported=result.imported, skipped=result.skipped, errors=result.errors
    )


@app.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return TransactionOut.model_validate(
        TransactionService(db, user_id).get(transaction_id)
    )


@app.patch("/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    patch: TransactionPatch,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user_id).update(transaction_id, patch)
    return TransactionOut.model_validate(txn)


@app.delete("/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    TransactionService(db, user_id).soft_delete(transaction_id)
    return Response(status_code=204)


# Budgets


@app.get("/budgets", response_model=list[BudgetOut])
def list_budgets(
    include_inactive: bool = False,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    budgets = BudgetService(db, user_id).list(include_inactive=include_inactive)
    return [BudgetOut.model_validate(b) for b in budgets]


@app.post("/budgets", response_model=BudgetOut, status_code=201)
def create_budget(
    data: BudgetIn, user_id: int = Depends(get_user_id), db: Session = Depends(get_db)
):
    return BudgetOut.model_validate(BudgetService(db, user_id).create(data))


@app.get("/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(
    budget_id: int, user_id: int = Depends(get_user_id), db: Session = Depends(get_db)
):
    return BudgetOut.model_validate(BudgetService(db, user_id).get(budget_id))


@app.patch("/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int,
    patch: BudgetPatch,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return BudgetOut.model_validate(BudgetService(db, user_id).update(budget_id, patch))


@app.delete("/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int, user_id: int = Depends(get_user_id), db: Session = Depends(get_db)
):
    BudgetService(db, user_id).soft_delete(budget_id)
    return Response(status_code=204)


# Savings goals


@app.get("/savings-goals", response_model=list[SavingsGoalOut])
def list_goals(
    status: Optional[GoalStatus] = None,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    goals = SavingsGoalService(db, user_id).list(status)
    return [SavingsGoalOut.model_validate(g) for g in goals]


@app.post("/savings-goals", response_model=SavingsGoalOut, status_code=201)
def create_goal(
    data: SavingsGoalIn,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return SavingsGoalOut.model_validate(SavingsGoalService(db, user_id).create(data))


@app.get("/savings-goals/{goal_id}", response_model=SavingsGoalOut)
def get_goal(
    goal_id: int, user_id: int = Depends(get_user_id), db: Session = Depends(get_db)
):
    return SavingsGoalOut.model_validate(SavingsGoalService(db, user_id).get(goal_id))


@app.patch("/savings-goals/{goal_id}", response_model=SavingsGoalOut)
def update_goal(
    goal_id: int,
    patch: SavingsGoalPatch,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    goal = SavingsGoalService(db, user_id).update(goal_id, patch)
    return SavingsGoalOut.model_validate(goal)


@app.post("/savings-goals/{goal_id}/contributions", response_model=SavingsGoalOut)
def contribute_to_goal(
    goal_id: int,
    data: ContributionIn,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    goal = SavingsGoalService(db, user_id).contribute(goal_id, data)
    return SavingsGoalOut.model_validate(goal)


@app.delete("/savings-goals/{goal_id}", status_code=204)
def delete_goal(
    goal_id: int, user_id: int = Depends(get_user_id), db: Session = Depends(get_db)
):
    SavingsGoalService(db, user_id).soft_delete(goal_id)
    return Response(status_code=204)


# Recurring rules


@app.get("/recurring-rules", response_model=list[RecurringRuleOut])
def list_recurring_rules(
    include_inactive: bool = True,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    rules = RecurringRuleService(db, user_id).list(include_inactive=include_inactive)
    return [RecurringRuleOut.model_validate(r) for r in rules]


@app.post("/recurring-rules", response_model=RecurringRuleOut, status_code=201)
def create_recurring_rule(
    data: RecurringRuleIn,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return RecurringRuleOut.model_validate(RecurringRuleService(db, user_id).create(data))


@app.get("/recurring-rules/{rule_id}", response_model=RecurringRuleOut)
def get_recurring_rule(
    rule_id: int, user_id: int = Depends(get_user_id), db: Session = Depends(get_db)
):
    return RecurringRuleOut.model_validate(RecurringRuleService(db, user_id).get(rule_id))


@app.patch("/recurring-rules/{rule_id}", response_model=RecurringRuleOut)
def update_recurring_rule(
    rule_id: int,
    patch: RecurringRulePatch,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    rule = RecurringRuleService(db, user_id).update(rule_id, patch)
    return RecurringRuleOut.model_validate(rule)


@app.delete("/recurring-rules/{rule_id}", status_code=204)
def delete_recurring_rule(
    rule_id: int, user_id: int = Depends(get_user_id), db: Session = Depends(get_db)
):
    RecurringRuleService(db, user_id).soft_delete(rule_id)
    return Response(status_code=204)


@app.post("/admin/recurring/run")
def run_recurring(user_id: int = Depends(get_user_id), db: Session = Depends(get_db)):
    posted = RecurringEngine(db).post_due_rules(user_id=user_id)
    return {"posted": posted}


# Reporting


@app.get("/summary", response_model=FinancialSummary)
def financial_summary(
    period: Optional[str] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    account_id: Optional[int] = None,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    resolved = resolve_period(
        period, start, end, today=ProfileService(db, user_id).today()
    )
    return SummaryService(db, user_id).financial_summary(
        resolved.start, resolved.end, account_id
    )


@app.get("/dashboard", response_model=DashboardOut)
def dashboard(user_id: int = Depends(get_user_id), db: Session = Depends(get_db)):
    return SummaryService(db, user_id).dashboard(ProfileService(db, user_id).today())


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
