import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from config import Settings, settings as default_settings
from lending.errors import InvalidRequest, LendingError, StorageFailure, Unauthorized
from lending.library import Library
from lending.models import User

logger = logging.getLogger(__name__)


class NotAuthenticated(LendingError):
    """No API key was sent, or it matches no account."""
    code = "not_authenticated"
    status_code = 401


class Caller:
    """The authenticated party behind a request.

    ``user`` is None for the bootstrap administrator key from the settings.
    """

    def __init__(self, user: Optional[User] = None) -> None:
        self.user = user

    @property
    def id(self) -> Optional[int]:
        return self.user.id if self.user else None

    @property
    def is_admin(self) -> bool:
        return self.user is None or self.user.is_admin


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_library(request: Request) -> Library:
    return request.app.state.library


def get_caller(request: Request, api_key: Optional[str] = Security(api_key_header)) -> Caller:
    """Resolve the X-API-Key header to the bootstrap admin or a user account."""
    if not api_key:
        raise NotAuthenticated("Missing X-API-Key header.")
    if secrets.compare_digest(api_key.encode(), request.app.state.settings.api_key.encode()):
        return Caller()
    user = get_library(request).users.authenticate(api_key)
    if user is None:
        raise NotAuthenticated("Invalid API key.")
    if not user.is_active:
        raise Unauthorized("This account is inactive.")
    return Caller(user)


def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise Unauthorized("Administrator role required.")
    return caller


def require_user(caller: Caller = Depends(get_caller)) -> User:
    """Endpoints about "my account" need a real user behind the key."""
    if caller.user is None:
        raise InvalidRequest("The bootstrap key has no user profile.")
    return caller.user


# --- Models ---
class TitleModel(BaseModel):
    id: int
    title: str
    author: str
    publisher: str | None = None
    publish_date: str | None = None
    price: float = 0.0
    total_copies: int
    available_copies: int
    status: str
    created_at: str | None = None


class TitleCreateModel(BaseModel):
    title: str
    author: str
    total_copies: int = Field(gt=0)
    publisher: str | None = None
    publish_date: str | None = None
    price: float = Field(default=0, ge=0)


class TitleUpdateModel(BaseModel):
    title: str | None = None
    author: str | None = None
    publisher: str | None = None
    publish_date: str | None = None
    price: float | None = Field(default=None, ge=0)
    total_copies: int | None = Field(default=None, ge=0)


class LoanModel(BaseModel):
    id: int
    title_id: int
    borrower_id: int | None = None
    opened_at: str
    closed_at: str | None = None
    state: str


class LoanListItem(LoanModel):
    title: str
    author: str
    username: str | None = None
    student_id: str | None = None
    email: str | None = None


class BorrowModel(BaseModel):
    title_id: int
    user_id: int | None = Field(default=None, description="Admins only: borrow on behalf of this user")


class UserModel(BaseModel):
    id: int
    username: str
    role: str
    status: str
    email: str | None = None
    student_id: str | None = None
    created_at: str | None = None


class UserWithKeyModel(UserModel):
    api_key: str


class UserCreateModel(BaseModel):
    username: str
    role: str = "user"
    status: str = "active"
    email: str | None = None
    student_id: str | None = None


class UserUpdateModel(BaseModel):
    username: str | None = None
    role: str | None = None
    status: str | None = None
    email: str | None = None
    student_id: str | None = None


class ProfileUpdateModel(BaseModel):
    username: str | None = None
    email: str | None = None
    student_id: str | None = None


class StatusModel(BaseModel):
    status: str


class TrendPoint(BaseModel):
    day: str
    total: int


class StatsModel(BaseModel):
    books: int
    users: int
    borrowed: int
    in_library: int
    borrow_rate: float
    trend: List[TrendPoint]


class Page(BaseModel):
    total: int
    page: int
    page_size: int
    total_pages: int


class TitlePage(Page):
    items: List[TitleModel]


class LoanPage(Page):
    items: List[LoanListItem]


class UserPage(Page):
    items: List[UserModel]


def _page(items: List[Any], total: int, page: int, page_size: int) -> Dict[str, Any]:
    return {
        "items": items,
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": (total + page_size - 1) // page_size if page_size else 0,
    }


router = APIRouter()


# --- Health ---
@router.get("/health")
def health(library: Library = Depends(get_library)):
    """Liveness probe with a quick database check."""
    db_ok = library.database.ping()
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
    }


# --- Titles ---
@router.get("/titles", response_model=TitlePage, dependencies=[Depends(get_caller)])
def list_titles(
    library: Library = Depends(get_library),
    keyword: str = Query("", description="Matches title or author"),
    status: Optional[str] = Query(None, description="IN_STOCK | ALL_LOANED"),
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
):
    page_size = library.page_size(limit)
    titles, total = library.catalog.list_titles(
        keyword=keyword, status=status, min_price=min_price, max_price=max_price, page=page, limit=page_size
    )
    return _page([t.to_dict() for t in titles], total, page, page_size)


@router.get("/titles/{title_id}", response_model=TitleModel, dependencies=[Depends(get_caller)])
def get_title(title_id: int, library: Library = Depends(get_library)):
    return library.catalog.get_title(title_id).to_dict()


@router.post("/titles", response_model=TitleModel, status_code=201, dependencies=[Depends(require_admin)])
def create_title(payload: TitleCreateModel, library: Library = Depends(get_library)):
    title = library.catalog.create_title(**payload.model_dump())
    return title.to_dict()


@router.put("/titles/{title_id}", response_model=TitleModel, dependencies=[Depends(require_admin)])
def update_title(title_id: int, payload: TitleUpdateModel, library: Library = Depends(get_library)):
    return library.catalog.update_title(title_id, **payload.model_dump()).to_dict()


@router.delete("/titles/{title_id}", dependencies=[Depends(require_admin)])
def delete_title(title_id: int, library: Library = Depends(get_library)):
    removed = library.catalog.delete_title(title_id)
    return {"message": f"Title {title_id} deleted.", "loans_removed": removed}


# --- Loans ---
@router.get("/loans", response_model=LoanPage)
def list_loans(
    caller: Caller = Depends(get_caller),
    library: Library = Depends(get_library),
    keyword: str = Query(""),
    state: Optional[str] = Query(None, description="OPEN | CLOSED"),
    user_id: Optional[int] = Query(None, description="Admins only: loans of this borrower"),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
):
    """Admins see every loan, optionally of one borrower; everyone else only their own."""
    page_size = library.page_size(limit)
    borrower_id = user_id if caller.is_admin else caller.id
    rows, total = library.list_loans(
        borrower_id=borrower_id, keyword=keyword, state=state, page=page, limit=page_size
    )
    return _page(rows, total, page, page_size)


@router.post("/loans", response_model=LoanModel, status_code=201)
def borrow(payload: BorrowModel, caller: Caller = Depends(get_caller), library: Library = Depends(get_library)):
    if payload.user_id is not None and payload.user_id != caller.id:
        if not caller.is_admin:
            raise Unauthorized("Only administrators can borrow on behalf of another user.")
        borrower_id = payload.user_id
    elif caller.user is not None:
        borrower_id = caller.user.id
    else:
        raise InvalidRequest("user_id is required when borrowing with the bootstrap key.")
    loan_id = library.borrow(payload.title_id, borrower_id)
    return library.get_loan(loan_id).to_dict()


@router.put("/loans/{loan_id}/return", response_model=LoanModel)
def return_loan(loan_id: int, caller: Caller = Depends(get_caller), library: Library = Depends(get_library)):
    owner = None if caller.is_admin else caller.id
    return library.return_loan(loan_id, borrower_id=owner).to_dict()


@router.delete("/loans/{loan_id}", dependencies=[Depends(require_admin)])
def delete_loan(loan_id: int, library: Library = Depends(get_library)):
    restored = library.admin_delete_loan(loan_id)
    return {"message": f"Loan {loan_id} deleted.", "copy_restored": restored}


# --- Users ---
@router.get("/users/me", response_model=UserModel)
def get_profile(user: User = Depends(require_user)):
    return user.to_dict()


@router.put("/users/me", response_model=UserModel)
def update_profile(payload: ProfileUpdateModel, user: User = Depends(require_user),
                   library: Library = Depends(get_library)):
    return library.users.update_profile(user.id, **payload.model_dump()).to_dict()


@router.get("/users", response_model=UserPage, dependencies=[Depends(require_admin)])
def list_users(
    library: Library = Depends(get_library),
    keyword: str = Query(""),
    role: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
):
    page_size = library.page_size(limit)
    users, total = library.users.list_users(
        keyword=keyword, role=role, status=status, page=page, limit=page_size
    )
    return _page([u.to_dict() for u in users], total, page, page_size)


@router.post("/users", response_model=UserWithKeyModel, status_code=201, dependencies=[Depends(require_admin)])
def create_user(payload: UserCreateModel, library: Library = Depends(get_library)):
    return library.users.create_user(**payload.model_dump()).to_dict(include_key=True)


@router.put("/users/{user_id}", response_model=UserModel, dependencies=[Depends(require_admin)])
def update_user(user_id: int, payload: UserUpdateModel, caller: Caller = Depends(require_admin),
                library: Library = Depends(get_library)):
    return library.users.update_user(user_id, acting_user_id=caller.id, **payload.model_dump()).to_dict()


@router.patch("/users/{user_id}/status", response_model=UserModel)
def set_user_status(user_id: int, payload: StatusModel, caller: Caller = Depends(require_admin),
                    library: Library = Depends(get_library)):
    return library.users.set_status(user_id, payload.status, acting_user_id=caller.id).to_dict()


@router.post("/users/{user_id}/reset-key", response_model=UserWithKeyModel, dependencies=[Depends(require_admin)])
def reset_user_key(user_id: int, library: Library = Depends(get_library)):
    return library.users.reset_api_key(user_id).to_dict(include_key=True)


@router.delete("/users/{user_id}")
def delete_user(user_id: int, caller: Caller = Depends(require_admin), library: Library = Depends(get_library)):
    closed = library.users.delete_user(user_id, acting_user_id=caller.id)
    return {"message": f"User {user_id} deleted.", "auto_returned": closed}


# --- Reporting ---
@router.get("/stats", response_model=StatsModel, dependencies=[Depends(require_admin)])
def get_stats(library: Library = Depends(get_library)):
    return library.get_statistics()


@router.get("/admin/audit", dependencies=[Depends(require_admin)])
def audit(library: Library = Depends(get_library)):
    problems = library.audit()
    return {"consistent": not problems, "problems": problems}


async def lending_error_handler(request: Request, exc: LendingError) -> JSONResponse:
    headers = {"Retry-After": "1"} if isinstance(exc, StorageFailure) else None
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def create_app(settings: Optional[Settings] = None, library: Optional[Library] = None) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug)
    app.state.settings = settings
    app.state.library = library or Library(settings=settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LendingError, lending_error_handler)
    app.include_router(router)
    return app


app = create_app()
