from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol, Tuple, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sockauth.logging import get_logger
from sockauth.service.errors import CollaboratorError, ConfigurationError, ServiceError
from sockauth.service.session import RequestContext
from sockauth.service.tokens import TokenService
from sockauth.storage.memory import MemoryUserService

logger = get_logger(__name__)


@dataclass
class Challenge:
    message: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Success:
    data: Dict[str, Any]


@dataclass
class Fail:
    challenge: Optional[Challenge] = None


@dataclass
class Redirect:
    url: str
    status: int = 302


@dataclass
class Pass:
    pass


StrategyResult = Union[Success, Fail, Redirect, Pass]


class Strategy(Protocol):
    name: str

    async def validate(
        self, request: RequestContext, options: Dict[str, Any]
    ) -> StrategyResult: ...


class WatchedService(Protocol):
    path: str
    id_field: str

    def on(self, event: str, listener: Callable[..., Any]) -> None: ...

    def remove_listener(self, event: str, listener: Callable[..., Any]) -> bool: ...


@dataclass
class WatcherBinding:
    """The service and entity key kept in sync for connections using a strategy."""

    service: WatchedService
    entity: str = "user"

    @property
    def id_field(self) -> str:
        return getattr(self.service, "id_field", "id")

    @property
    def service_path(self) -> str:
        return getattr(self.service, "path", type(self.service).__name__)


@dataclass
class RegisteredStrategy:
    strategy: Strategy
    service: Union[str, WatchedService, None] = None
    entity: str = "user"
    options: Dict[str, Any] = field(default_factory=dict)


class StrategyRegistry:
    """Maps strategy names to validators and their entity bindings."""

    def __init__(self, services: Optional[Dict[str, WatchedService]] = None) -> None:
        self.services: Dict[str, WatchedService] = dict(services or {})
        self._strategies: Dict[str, RegisteredStrategy] = {}

    def add_service(self, path: str, service: WatchedService) -> None:
        self.services[path] = service

    def register(
        self,
        strategy: Strategy,
        *,
        service: Union[str, WatchedService, None] = None,
        entity: str = "user",
        options: Optional[Dict[str, Any]] = None,
    ) -> RegisteredStrategy:
        entry = RegisteredStrategy(
            strategy=strategy, service=service, entity=entity, options=dict(options or {})
        )
        self._strategies[strategy.name] = entry
        logger.debug("strategy_registered", strategy=strategy.name, entity=entity)
        return entry

    def is_registered(self, name: Optional[str]) -> bool:
        return bool(name) and name in self._strategies

    def names(self) -> Tuple[str, ...]:
        return tuple(self._strategies)

    def get(self, name: str) -> RegisteredStrategy:
        entry = self._strategies.get(name)
        if entry is None:
            raise ConfigurationError(
                f"Your '{name}' authentication strategy is not registered.",
                detail={"strategy": name},
            )
        return entry

    async def validate(self, name: str, request: RequestContext) -> StrategyResult:
        entry = self.get(name)
        try:
            return await entry.strategy.validate(request, entry.options)
        except ServiceError:
            raise
        except Exception as exc:
            logger.error(
                "strategy_validation_failed",
                strategy=name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise CollaboratorError(
                f"The '{name}' strategy failed to validate the request.",
                detail={"strategy": name},
            ) from exc

    def lookup_binding(self, name: str) -> Optional[WatcherBinding]:
        entry = self.get(name)
        service = entry.service
        if service is None:
            return None
        if isinstance(service, str):
            resolved = self.services.get(service)
            if resolved is None:
                raise ConfigurationError(
                    f"Service '{service}' for the '{name}' strategy is not registered.",
                    detail={"strategy": name, "service": service},
                )
            service = resolved
        return WatcherBinding(service=service, entity=entry.entity)


_pwd_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> Tuple[str, str]:
    return _pwd_hasher.hash(password), "argon2id"


class LocalStrategy:
    """Username and password checked against a user service."""

    name = "local"

    def __init__(self, users: MemoryUserService) -> None:
        self.users = users

    async def validate(
        self, request: RequestContext, options: Dict[str, Any]
    ) -> StrategyResult:
        username_field = options.get("username_field", "username")
        password_field = options.get("password_field", "password")
        entity = options.get("entity", "user")
        username = request.body.get(username_field)
        password = request.body.get(password_field)
        if not isinstance(username, str) or not isinstance(password, str) or not username:
            return Fail(Challenge("Missing credentials"))
        user = self.users.get_user_by_username(username)
        if user is None or not user.is_active:
            return Fail(Challenge("Invalid login"))
        if not self.verify_password(user.id, password):
            return Fail(Challenge("Invalid login"))
        return Success({entity: user.to_dict()})

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.users.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return _pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            logger.warning("password_verification_failed", user_id=user_id)
            return False


class JWTStrategy:
    """Re-authenticate a socket with an access token issued earlier."""

    name = "jwt"

    def __init__(self, tokens: TokenService, users: MemoryUserService) -> None:
        self.tokens = tokens
        self.users = users

    async def validate(
        self, request: RequestContext, options: Dict[str, Any]
    ) -> StrategyResult:
        entity = options.get("entity", "user")
        raw = request.body.get("access_token") or request.body.get("accessToken")
        if not isinstance(raw, str) or not raw:
            return Fail(Challenge("No access token"))
        if raw.lower().startswith("bearer "):
            raw = raw.split(" ", 1)[1]
        payload = await self.tokens.verify(raw)
        if not payload:
            return Fail(Challenge("Invalid access token"))
        user = self.users.get_user(str(payload.get("sub")))
        if user is None or not user.is_active:
            return Fail(Challenge("Invalid access token"))
        return Success({entity: user.to_dict()})
