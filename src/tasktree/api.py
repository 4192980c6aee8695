"""
FastAPI Backend for the Task Tree System

Exposes the owner-scoped CRUD resources (lists, tasks, labels, sessions),
label attachment, email and Discord login, and the caller's profile. Every
resource endpoint authenticates the bearer session first; the resolved user
id scopes every query.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Type
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from . import __version__
from .auth import AccountService, ClientInfo, SessionGuard, client_info_from_headers
from .config import AppConfig
from .crud import CrudRepository, PatchOutcome
from .database import Database, open_database
from .exceptions import TaskTreeError
from .identity import DiscordIdentityProvider
from .labels import TaskLabels
from .models import (
    DiscordLogin,
    EmailLogin,
    EmailRegistration,
    ErrorResponse,
    LabelAttach,
    LabelCreate,
    LabelPatch,
    ListCreate,
    ListPatch,
    PageResponse,
    PostResponse,
    SessionPayload,
    SuccessResponse,
    TaskCreate,
    TaskPatch,
    create_error_response,
    create_success_response,
)
from .patch import PatchModel
from .resources import repositories

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Global instances for dependency injection, set up by the lifespan handler
db_instance: Optional[Database] = None
config_instance: Optional[AppConfig] = None


def get_config() -> AppConfig:
    global config_instance
    if config_instance is None:
        config_instance = AppConfig.from_env()
    return config_instance


def get_database() -> Database:
    """
    FastAPI dependency to provide the database pool.

    Raises:
        HTTPException: 503 if the database has not been opened
    """
    if db_instance is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return db_instance


def get_repositories(db: Database = Depends(get_database),
                     config: AppConfig = Depends(get_config)) -> Dict[str, CrudRepository]:
    return repositories(db, config.page_limit, config.max_page_limit)


def get_accounts(db: Database = Depends(get_database),
                 config: AppConfig = Depends(get_config)) -> AccountService:
    return AccountService(db, config.session_duration, config.bcrypt_rounds)


def get_identity_provider(config: AppConfig = Depends(get_config)) -> DiscordIdentityProvider:
    return DiscordIdentityProvider(config.discord_api_url, config.identity_timeout_seconds)


def get_client_info(request: Request) -> ClientInfo:
    """Client address, platform and user agent of the current request."""
    headers = {name: ", ".join(request.headers.getlist(name)) for name in request.headers.keys()}
    peer = request.client.host if request.client else None
    return client_info_from_headers(headers, peer, request.cookies.get("client_platform"))


bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Database = Depends(get_database),
) -> Dict[str, Any]:
    """Resolve the bearer session token to its user; raises 401 otherwise."""
    token = credentials.credentials if credentials else None
    return SessionGuard(db).authenticate(token)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database pool on startup and close it on shutdown."""
    global db_instance

    config = get_config()
    try:
        db_instance = open_database(
            config.database_path,
            pool_size=config.database_pool_size,
            timeout_seconds=config.storage_timeout_seconds,
        )
        logger.info(f"Database initialized: {config.database_path} ({config.environment_name})")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    yield

    if db_instance:
        db_instance.close()
        db_instance = None
        logger.info("Database connection closed")


app = FastAPI(
    title="Task Tree API",
    description="Owner-scoped lists, tasks and labels with session authentication",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def crud_router(name: str, create_model: Optional[Type[BaseModel]],
                patch_model: Optional[Type[PatchModel]]) -> APIRouter:
    """
    Build list/get/create/patch/delete routes for one resource.

    A resource without a create or patch model gets no route for that verb.
    """
    router = APIRouter(
        prefix=f"/{name}",
        tags=[name],
        responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    )

    @router.get("", response_model=PageResponse)
    def list_items(
        limit: Optional[int] = Query(None, description="Page size"),
        page: int = Query(0, description="Zero-based page number"),
        user: Dict[str, Any] = Depends(get_current_user),
        repos: Dict[str, CrudRepository] = Depends(get_repositories),
    ):
        return repos[name].list(user["id"], limit=limit, page=page)

    @router.get("/{item_id}")
    def get_item(
        item_id: UUID,
        user: Dict[str, Any] = Depends(get_current_user),
        repos: Dict[str, CrudRepository] = Depends(get_repositories),
    ):
        return repos[name].get(user["id"], item_id)

    if create_model is not None:
        @router.post("", status_code=201, response_model=PostResponse)
        def create_item(
            payload: create_model,
            user: Dict[str, Any] = Depends(get_current_user),
            repos: Dict[str, CrudRepository] = Depends(get_repositories),
        ):
            return {"id": repos[name].create(user["id"], payload.model_dump())}

    if patch_model is not None:
        @router.patch("/{item_id}", response_model=SuccessResponse)
        def patch_item(
            item_id: UUID,
            payload: patch_model,
            user: Dict[str, Any] = Depends(get_current_user),
            repos: Dict[str, CrudRepository] = Depends(get_repositories),
        ):
            logger.debug(f"Patch {name} {item_id}: {payload.to_json()}")
            outcome = repos[name].patch(user["id"], item_id, payload.patches())
            if outcome is PatchOutcome.NO_CHANGES:
                return create_success_response("Nothing to update.")
            return create_success_response("Patch successful.")

    @router.delete("/{item_id}", response_model=SuccessResponse)
    def delete_item(
        item_id: UUID,
        user: Dict[str, Any] = Depends(get_current_user),
        repos: Dict[str, CrudRepository] = Depends(get_repositories),
    ):
        repos[name].delete(user["id"], item_id)
        return create_success_response("Delete successful.")

    return router


@app.get("/")
def index():
    return {"message": "Task Tree API", "version": __version__}


@app.get("/healthcheck")
def health_check(db: Database = Depends(get_database)):
    """Storage round-trip for load balancers and monitoring."""
    if not db.ping():
        return JSONResponse(
            status_code=503, content=create_error_response("Database unavailable.", 503)
        )
    return {"status": "healthy", "database_connected": True}


@app.post("/tasks/{task_id}/labels", response_model=SuccessResponse)
def attach_label(
    task_id: UUID,
    payload: LabelAttach,
    user: Dict[str, Any] = Depends(get_current_user),
    db: Database = Depends(get_database),
):
    TaskLabels(db).attach(user["id"], task_id, payload.id)
    return create_success_response("Label attached.")


@app.delete("/tasks/{task_id}/labels/{label_id}", response_model=SuccessResponse)
def detach_label(
    task_id: UUID,
    label_id: UUID,
    user: Dict[str, Any] = Depends(get_current_user),
    db: Database = Depends(get_database),
):
    TaskLabels(db).detach(user["id"], task_id, label_id)
    return create_success_response("Label detached.")


app.include_router(crud_router("lists", ListCreate, ListPatch))
app.include_router(crud_router("tasks", TaskCreate, TaskPatch))
app.include_router(crud_router("labels", LabelCreate, LabelPatch))
app.include_router(crud_router("sessions", None, None))


@app.post("/register/email", response_model=SuccessResponse)
def register_email(payload: EmailRegistration, accounts: AccountService = Depends(get_accounts)):
    payload.validate_rules()
    user_id = accounts.register_email(payload.email, payload.password, payload.username)
    return create_success_response("Registration successful.", {"user_id": user_id})


@app.post("/login/email", response_model=SessionPayload)
def login_email(
    payload: EmailLogin,
    client: ClientInfo = Depends(get_client_info),
    accounts: AccountService = Depends(get_accounts),
):
    return accounts.login_email(payload.email, payload.password, client)


@app.post("/login/discord", response_model=SessionPayload)
def login_discord(
    payload: DiscordLogin,
    client: ClientInfo = Depends(get_client_info),
    accounts: AccountService = Depends(get_accounts),
    provider: DiscordIdentityProvider = Depends(get_identity_provider),
):
    identity = provider.fetch_identity(payload.access_token)
    return accounts.login_external(identity, client)


@app.get("/users/me")
def current_user(
    user: Dict[str, Any] = Depends(get_current_user),
    accounts: AccountService = Depends(get_accounts),
):
    return accounts.describe_user(user)


@app.exception_handler(TaskTreeError)
async def task_tree_exception_handler(request: Request, exc: TaskTreeError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content=create_error_response(
            "Request failed validation.", 422, {"errors": jsonable_encoder(exc.errors())}
        ),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content=create_error_response("Internal server error", 500)
    )


if __name__ == "__main__":
    import uvicorn

    config = get_config()
    uvicorn.run("tasktree.api:app", host=config.host, port=config.port, log_level="info")
