import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Iterable, List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, FastAPI, Form, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import ValidationError

from .config import Settings, load_settings
from .coordinator import ReservationCoordinator
from .database import MongoRepository
from .errors import (
    ForbiddenError,
    InternalError,
    InvalidArgumentError,
    LendingError,
    NotFoundError,
    UnauthorizedError,
)
from .logging_config import access_logger, setup_logging
from .schemas import (
    BorrowRequestIn,
    CancelIn,
    DecisionIn,
    EnrichedTransaction,
    Item,
    ItemIn,
    ItemUpdateIn,
    ACTIVE_STATUSES,
    Transaction,
    User,
    UserSummary,
)
from .security import create_access_token, decode_access_token, hash_password, verify_password
from .stores import Repository

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")
router = APIRouter()

# Fields only the coordinator may change
LOCKED_ITEM_FIELDS = {"status", "available"}


# Dependencies

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_repository(request: Request) -> Repository:
    return request.app.state.repository


def get_coordinator(request: Request) -> ReservationCoordinator:
    return request.app.state.coordinator


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    settings: Settings = Depends(get_settings),
    repo: Repository = Depends(get_repository),
) -> User:
    user_id = decode_access_token(settings, token)
    user = await repo.users.get(user_id)
    if not user:
        raise UnauthorizedError("Could not validate credentials")
    return user


# Response helpers

def _dump(model) -> dict:
    return model.model_dump(by_alias=True, mode="json")


def _summary(user: Optional[User]) -> Optional[UserSummary]:
    if user is None:
        return None
    return UserSummary(id=user.id, name=user.name, email=user.email)


def _with_owner(item: Item, owners: dict) -> dict:
    owner = owners.get(item.owner_id)
    return {
        **_dump(item),
        "owner": {"name": owner.name, "email": owner.email} if owner else {"name": "Unknown User", "email": ""},
    }


async def _user_map(repo: Repository, user_ids: Iterable[str]) -> dict:
    return {u.id: u for u in await repo.users.get_many(user_ids)}


async def _enrich(repo: Repository, transactions: List[Transaction]) -> List[dict]:
    items = {i.id: i for i in await repo.items.find_all(ids={t.item_id for t in transactions})}
    users = await _user_map(repo, {t.borrower_id for t in transactions} | {t.lender_id for t in transactions})
    return [
        _dump(EnrichedTransaction(
            id=t.id,
            item_id=t.item_id,
            borrower_id=t.borrower_id,
            lender_id=t.lender_id,
            status=t.status,
            item=items.get(t.item_id),
            borrower=_summary(users.get(t.borrower_id)),
            lender=_summary(users.get(t.lender_id)),
        ))
        for t in transactions
    ]


# Service endpoints

@router.get("/")
async def root():
    return {"message": "Welcome to LendingApp API"}


@router.get("/health")
async def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/test")
async def test_connection(repo: Repository = Depends(get_repository)):
    await repo.ping()
    return {"ok": True, "message": "Database connected"}


# Auth endpoints

@router.post("/auth/register", status_code=status.HTTP_201_CREATED)
async def register(
    name: str = Form(""),
    email: str = Form(""),
    password: str = Form(""),
    settings: Settings = Depends(get_settings),
    repo: Repository = Depends(get_repository),
):
    if not name or not email or not password:
        raise InvalidArgumentError("All fields are required")
    try:
        user = User(id=str(uuid4()), name=name, email=email.lower(), password=hash_password(password))
    except ValidationError:
        raise InvalidArgumentError("Invalid email address", code="invalid_email")
    user = await repo.users.create(user)
    logger.info("Registered user %s", user.id)
    token = create_access_token(settings, {"sub": user.id})
    return {
        "message": "User registered successfully",
        "access_token": token,
        "token_type": "bearer",
        "user": _dump(_summary(user)),
    }


@router.post("/auth/login")
async def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    settings: Settings = Depends(get_settings),
    repo: Repository = Depends(get_repository),
):
    user = await repo.users.find_by_email(form_data.username)
    if not user or not verify_password(form_data.password, user.password):
        raise UnauthorizedError("Invalid email or password", code="invalid_credentials")
    token = create_access_token(settings, {"sub": user.id})
    return {
        "message": "Login successful",
        "access_token": token,
        "token_type": "bearer",
        "user": _dump(_summary(user)),
    }


# Users

@router.get("/users/me")
async def me(current_user: User = Depends(get_current_user)):
    return _dump(_summary(current_user))


@router.get("/users")
async def list_users(repo: Repository = Depends(get_repository)):
    return [_dump(_summary(u)) for u in await repo.users.find_all()]


@router.get("/users/{user_id}")
async def get_user(user_id: str, repo: Repository = Depends(get_repository)):
    user = await repo.users.get(user_id)
    if not user:
        raise NotFoundError("User not found", code="user_not_found")
    return _dump(_summary(user))


# Items

@router.post("/items", status_code=status.HTTP_201_CREATED)
async def create_item(body: ItemIn, repo: Repository = Depends(get_repository)):
    owner = await repo.users.get(body.owner_id)
    if not owner:
        raise NotFoundError("Owner not found", code="owner_not_found")
    item = await repo.items.create(Item(
        id=str(uuid4()),
        name=body.name,
        description=body.description,
        owner_id=owner.id,
    ))
    logger.info("Created item %s for owner %s", item.id, owner.id)
    return {"message": "Item created successfully", "item": _with_owner(item, {owner.id: owner})}


@router.get("/items")
async def list_items(owner_id: Optional[str] = None, repo: Repository = Depends(get_repository)):
    items = await repo.items.find_all(owner_id=owner_id)
    if not items:
        return []
    owners = await _user_map(repo, {i.owner_id for i in items})
    return [_with_owner(i, owners) for i in items]


@router.get("/items/{item_id}")
async def get_item(item_id: str, repo: Repository = Depends(get_repository)):
    item = await repo.items.get(item_id)
    if not item:
        raise NotFoundError("Item not found", code="item_not_found")
    return _with_owner(item, await _user_map(repo, [item.owner_id]))


@router.put("/items/{item_id}")
async def update_item(
    item_id: str,
    body: ItemUpdateIn,
    current_user: User = Depends(get_current_user),
    repo: Repository = Depends(get_repository),
):
    if LOCKED_ITEM_FIELDS & set(body.model_extra or {}):
        raise InvalidArgumentError(
            "Item availability changes only through borrow transactions",
            code="status_not_editable",
        )
    item = await repo.items.get(item_id)
    if not item:
        raise NotFoundError("Item not found", code="item_not_found")
    if item.owner_id != current_user.id:
        raise ForbiddenError("Not owner", code="not_owner")
    updates = {k: v for k, v in {"name": body.name, "description": body.description}.items() if v}
    if not updates:
        raise InvalidArgumentError("Nothing to update")
    item = await repo.items.update_details(item_id, **updates)
    return {"message": "Item updated successfully", "item": _dump(item)}


# Transactions

@router.post("/transactions", status_code=status.HTTP_201_CREATED)
async def create_transaction(body: BorrowRequestIn, coordinator: ReservationCoordinator = Depends(get_coordinator)):
    transaction = await coordinator.request_borrow(body.item_id, body.borrower_id)
    return {"message": "Borrow request sent successfully", "transaction": _dump(transaction)}


@router.get("/transactions")
async def list_transactions(repo: Repository = Depends(get_repository)):
    return [_dump(t) for t in await repo.transactions.find_all()]


@router.get("/transactions/user/{user_id}")
async def list_user_transactions(user_id: str, repo: Repository = Depends(get_repository)):
    transactions = await repo.transactions.find_all(user_id=user_id, statuses=ACTIVE_STATUSES)
    return await _enrich(repo, transactions)


@router.post("/transactions/cancel")
async def cancel_transaction(
    body: CancelIn,
    coordinator: ReservationCoordinator = Depends(get_coordinator),
    repo: Repository = Depends(get_repository),
):
    result = await coordinator.cancel_or_return(body.item_id, body.borrower_id, actor_id=body.user_id)
    transaction = result.transaction
    users = await _user_map(repo, [transaction.borrower_id, transaction.lender_id])
    borrower = _summary(users.get(transaction.borrower_id))
    lender = _summary(users.get(transaction.lender_id))
    return {
        "message": "Item returned successfully and is now available for borrowing",
        "transaction": {
            **_dump(transaction),
            "borrower": _dump(borrower) if borrower else None,
            "lender": _dump(lender) if lender else None,
        },
        "item": {"id": result.item.id, "name": result.item.name, "status": result.item.status.value},
    }


@router.put("/transactions/{transaction_id}")
async def decide_transaction(
    transaction_id: str,
    body: DecisionIn,
    coordinator: ReservationCoordinator = Depends(get_coordinator),
):
    transaction = await coordinator.decide_request(transaction_id, body.user_id, body.status)
    return {"message": f"Request {transaction.status.value} successfully", "transaction": _dump(transaction)}


# Error handling

async def lending_error_handler(request: Request, exc: LendingError):
    if isinstance(exc, InternalError):
        logger.error("Internal error on %s %s", request.method, request.url.path, exc_info=exc)
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, UnauthorizedError) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def _describe(error: dict) -> str:
    where = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
    return f"{where}: {error['msg']}" if where else error["msg"]


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": _describe(errors[0]) if errors else "Invalid request body",
            "code": InvalidArgumentError.code,
            "errors": jsonable_encoder(exc.errors()),
        },
    )


async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    access_logger().info(
        "%s %s -> %d (%.1f ms)",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000,
    )
    return response


def create_app(repository: Optional[Repository] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the API around ``repository``; without one, MongoDB is opened on startup."""
    settings = settings or load_settings()
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "repository", None) is None:
            owned = MongoRepository.from_settings(settings)
            await owned.ensure_indexes()
            _attach(app, owned)
            logger.info("Connected to the database %s", settings.database_name)
        try:
            yield
        finally:
            if owned is not None:
                await owned.close()

    def _attach(app: FastAPI, repo: Repository) -> None:
        app.state.repository = repo
        app.state.coordinator = ReservationCoordinator(repo, allow_lender_cancel=settings.allow_lender_cancel)

    app = FastAPI(title="Lending API", lifespan=lifespan)
    app.state.settings = settings
    app.state.repository = None
    if repository is not None:
        _attach(app, repository)

    # CORS
    origins = [settings.frontend_url, "*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(log_requests)
    app.add_exception_handler(LendingError, lending_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)
    return app


app = create_app()
