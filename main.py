import logging
import os
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

import auth, crud, errors, models, schemas
from auth import get_current_user, get_db, get_session_store
from config import get_settings
from database import STORE_FAILURES, init_db
from sessions import InMemorySessionStore, SessionStore

settings = get_settings()

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Planner")
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.session_secret,
    session_cookie=settings.session_cookie,
    max_age=settings.session_ttl_secs,
    same_site=settings.same_site,
    https_only=settings.production,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.frontend_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.state.session_store = InMemorySessionStore(ttl_secs=settings.session_ttl_secs)

app.mount("/static", StaticFiles(directory=settings.static_dir, check_dir=False), name="static")

# Frontend pages served from the static dir; anything else gets DEFAULT_PAGE.
PAGES = {
    "auth.html": "auth.html",
    "budget_plan.html": "budget_plan.html",
}
DEFAULT_PAGE = "auth.html"


@app.on_event("startup")
def startup_event():
    init_db()
    logger.info("Database tables ready")

# ---------------------- ERRORS ----------------------
@app.exception_handler(errors.BudgetAppError)
def app_error_handler(request: Request, exc: errors.BudgetAppError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    message = first.get("msg", "Invalid input")
    if field:
        message = f"{field}: {message}"
    return JSONResponse(status_code=422, content={"message": message})

@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail)}, headers=exc.headers)

def store_failure_handler(request: Request, exc: Exception):
    logger.exception(f"Data store failure on {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse(status_code=503, content={"message": errors.StoreUnavailable.default_message})

for failure in STORE_FAILURES:
    app.add_exception_handler(failure, store_failure_handler)

# ---------------------- AUTH ----------------------
@app.post("/auth/register", response_model=schemas.SessionOut, status_code=201)
def register(payload: schemas.UserCreate, db: Session = Depends(get_db)):
    user = auth.register(db, payload)
    return schemas.SessionOut(user_id=user.id, email=user.email)

@app.post("/auth/login", response_model=schemas.SessionOut)
def login(
    request: Request,
    payload: schemas.LoginIn,
    db: Session = Depends(get_db),
    store: SessionStore = Depends(get_session_store),
):
    user = auth.login_user(request, db, store, payload.email, payload.password)
    return schemas.SessionOut(user_id=user.id, email=user.email)

@app.post("/api/logout", response_model=schemas.Ack)
def logout(request: Request, store: SessionStore = Depends(get_session_store)):
    auth.logout_user(request, store)
    return schemas.Ack()

@app.get("/api/session", response_model=schemas.SessionOut)
def session_info(user: models.User = Depends(get_current_user)):
    return schemas.SessionOut(user_id=user.id, email=user.email)

# ---------------------- BUDGETS ----------------------
@app.get("/api/budgets", response_model=list[schemas.BudgetOut])
def list_budgets(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return crud.list_budgets(db, user.id)

@app.post("/api/budgets", response_model=schemas.BudgetOut, status_code=201)
def create_budget(
    payload: schemas.BudgetCreate,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return crud.create_budget(db, user.id, payload)

@app.get("/api/budgets/{budget_id}", response_model=schemas.BudgetOut)
def get_budget(budget_id: int, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return crud.get_budget(db, user.id, budget_id)

@app.put("/api/budgets/{budget_id}", response_model=schemas.BudgetOut)
def update_budget(
    budget_id: int,
    payload: schemas.BudgetUpdate,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return crud.update_budget(db, user.id, budget_id, payload)

@app.delete("/api/budgets/{budget_id}", response_model=schemas.Ack)
def delete_budget(budget_id: int, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    crud.delete_budget(db, user.id, budget_id)
    return schemas.Ack()

@app.get("/api/budgets/{budget_id}/summary", response_model=schemas.BudgetSummary)
def budget_summary(budget_id: int, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return crud.budget_summary(db, user.id, budget_id)

# ---------------------- TRANSACTIONS ----------------------
@app.get("/api/transactions", response_model=list[schemas.TransactionOut])
def list_transactions(
    start: Optional[date] = None,
    end: Optional[date] = None,
    budget_id: Optional[int] = Query(None, alias="budgetId"),
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    filters = crud.TransactionFilters(start=start, end=end, budget_id=budget_id)
    return crud.list_transactions(db, user.id, filters)

@app.post("/api/transactions", response_model=schemas.TransactionOut, status_code=201)
def create_transaction(
    payload: schemas.TransactionCreate,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return crud.create_transaction(db, user.id, payload)

@app.get("/api/transactions/{transaction_id}", response_model=schemas.TransactionOut)
def get_transaction(transaction_id: int, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return crud.get_transaction(db, user.id, transaction_id)

@app.put("/api/transactions/{transaction_id}", response_model=schemas.TransactionOut)
def update_transaction(
    transaction_id: int,
    payload: schemas.TransactionUpdate,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return crud.update_transaction(db, user.id, transaction_id, payload)

@app.delete("/api/transactions/{transaction_id}", response_model=schemas.Ack)
def delete_transaction(transaction_id: int, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    crud.delete_transaction(db, user.id, transaction_id)
    return schemas.Ack()

# ---------------------- PAGES ----------------------
@app.get("/health")
def health():
    return {"status": "ok"}

@app.get("/")
def home():
    return serve_page(DEFAULT_PAGE)

@app.get("/{page}")
def serve_page(page: str):
    path = settings.static_dir / PAGES.get(page, DEFAULT_PAGE)
    if not path.is_file():
        raise errors.NotFound("Page not found")
    return FileResponse(path)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "4000")), reload=False)


if __name__ == "__main__":
    main()
