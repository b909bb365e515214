import logging

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    AccountSummaryOut,
    AmountIn,
    CategoryIn,
    CategoryOut,
    LedgerAuditOut,
    MovementOut,
    TransactionIn,
    TransactionOut,
    TransactionTypeIn,
    TransactionTypeOut,
    UserIn,
    UserOut,
)
from services import (
    AccountService,
    CategoryService,
    ConflictError,
    InsufficientFundsError,
    LedgerError,
    MovementService,
    NotFoundError,
    TransactionService,
    TransactionTypeService,
    UserService,
    ValidationError,
)


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Personal Ledger")

ERROR_STATUS: dict[type[LedgerError], int] = {
    NotFoundError: 404,
    ValidationError: 422,
    InsufficientFundsError: 400,
    ConflictError: 409,
}


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status_code = ERROR_STATUS.get(type(exc), 400)
    if status_code == 409:
        logger.warning(f"conflict: path={request.url.path} detail={exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/health")
def health_check():
    return {"status": "healthy"}


@app.post("/accounts", response_model=AccountOut, status_code=201)
def create_account(data: AccountIn, db: Session = Depends(get_db)):
    return AccountService(db).create_account(data)


@app.get("/accounts", response_model=list[AccountSummaryOut])
def list_accounts(db: Session = Depends(get_db)):
    return AccountService(db).list_all()


@app.get("/accounts/{account_id}", response_model=AccountOut)
def get_account(account_id: int, db: Session = Depends(get_db)):
    return AccountService(db).get(account_id)


@app.put("/accounts/{account_id}", response_model=AccountOut)
def update_account(account_id: int, data: AccountIn, db: Session = Depends(get_db)):
    return AccountService(db).update_account(account_id, data)


@app.delete("/accounts/{account_id}", status_code=204)
def delete_account(account_id: int, db: Session = Depends(get_db)):
    AccountService(db).delete_account(account_id)
    return Response(status_code=204)


@app.patch("/accounts/{account_id}/deposit", response_model=AccountOut)
def deposit(account_id: int, data: AmountIn, db: Session = Depends(get_db)):
    return AccountService(db).deposit(account_id, data.value)


@app.patch("/accounts/{account_id}/withdraw", response_model=AccountOut)
def withdraw(account_id: int, data: AmountIn, db: Session = Depends(get_db)):
    return AccountService(db).withdraw(account_id, data.value)


@app.get("/accounts/{account_id}/movements", response_model=list[MovementOut])
def list_movements(account_id: int, db: Session = Depends(get_db)):
    return MovementService(db).list_by_account(account_id)


@app.get("/accounts/{account_id}/audit", response_model=LedgerAuditOut)
def audit_account(account_id: int, db: Session = Depends(get_db)):
    return AccountService(db).audit(account_id)


@app.post("/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    return TransactionService(db).create(data)


@app.get("/transactions", response_model=list[TransactionOut])
def list_transactions(db: Session = Depends(get_db)):
    return TransactionService(db).list_all()


@app.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return TransactionService(db).get(transaction_id)


@app.put("/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int, data: TransactionIn, db: Session = Depends(get_db)
):
    return TransactionService(db).update(transaction_id, data)


@app.delete("/transactions/{transaction_id}", status_code=204)
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    TransactionService(db).delete(transaction_id)
    return Response(status_code=204)


@app.post("/users", response_model=UserOut, status_code=201)
def create_user(data: UserIn, db: Session = Depends(get_db)):
    return UserService(db).create(data)


@app.get("/users", response_model=list[UserOut])
def list_users(db: Session = Depends(get_db)):
    return UserService(db).list_all()


@app.post("/categories", response_model=CategoryOut, status_code=201)
def create_category(data: CategoryIn, db: Session = Depends(get_db)):
    return CategoryService(db).create(data)


@app.get("/categories", response_model=list[CategoryOut])
def list_categories(db: Session = Depends(get_db)):
    return CategoryService(db).list_all()


@app.post("/transaction-types", response_model=TransactionTypeOut, status_code=201)
def create_transaction_type(data: TransactionTypeIn, db: Session = Depends(get_db)):
    return TransactionTypeService(db).create(data)


@app.get("/transaction-types", response_model=list[TransactionTypeOut])
def list_transaction_types(db: Session = Depends(get_db)):
    return TransactionTypeService(db).list_all()
