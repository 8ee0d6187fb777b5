import pytest

from sockauth.service.errors import ConfigurationError
from sockauth.service.session import RequestContext
from sockauth.service.strategies import (
    Fail,
    JWTStrategy,
    LocalStrategy,
    StrategyRegistry,
    Success,
    WatcherBinding,
    hash_password,
)


def _request(**body):
    return RequestContext(body=body)


class TestLocalStrategy:
    async def test_valid_credentials(self, users, alice):
        result = await LocalStrategy(users).validate(
            _request(username="alice", password="wonderland"), {}
        )

        assert isinstance(result, Success)
        assert result.data["user"]["id"] == alice.id
        assert "password" not in result.data["user"]

    async def test_wrong_password(self, users, alice):
        result = await LocalStrategy(users).validate(
            _request(username="alice", password="nope"), {}
        )

        assert isinstance(result, Fail)
        assert result.challenge.message == "Invalid login"

    async def test_unknown_user(self, users):
        result = await LocalStrategy(users).validate(
            _request(username="nobody", password="x"), {}
        )

        assert isinstance(result, Fail)

    async def test_missing_credentials(self, users):
        result = await LocalStrategy(users).validate(_request(username="alice"), {})

        assert isinstance(result, Fail)
        assert result.challenge.message == "Missing credentials"

    async def test_inactive_user(self, users):
        user = users.create_user("carol", is_active=False)
        users.save_password(user.id, *hash_password("pw"))

        result = await LocalStrategy(users).validate(_request(username="carol", password="pw"), {})

        assert isinstance(result, Fail)

    async def test_custom_fields_and_entity(self, users, alice):
        options = {"username_field": "login", "password_field": "secret", "entity": "account"}

        result = await LocalStrategy(users).validate(
            _request(login="alice", secret="wonderland"), options
        )

        assert isinstance(result, Success)
        assert result.data["account"]["username"] == "alice"

    async def test_unknown_hash_algorithm(self, users):
        user = users.create_user("dave")
        users.save_password(user.id, "plaintext", "plain")

        result = await LocalStrategy(users).validate(
            _request(username="dave", password="plaintext"), {}
        )

        assert isinstance(result, Fail)


class TestJWTStrategy:
    async def test_valid_token(self, users, alice, token_service):
        token = await token_service.issue({"user": {"id": alice.id}}, {})

        result = await JWTStrategy(token_service, users).validate(
            _request(access_token=token.access_token), {}
        )

        assert isinstance(result, Success)
        assert result.data["user"]["id"] == alice.id

    async def test_bearer_prefix_and_camel_case(self, users, alice, token_service):
        token = await token_service.issue({"user": {"id": alice.id}}, {})

        result = await JWTStrategy(token_service, users).validate(
            _request(accessToken=f"Bearer {token.access_token}"), {}
        )

        assert isinstance(result, Success)

    async def test_revoked_token(self, users, alice, token_service):
        token = await token_service.issue({"user": {"id": alice.id}}, {})
        await token_service.invalidate(token.access_token, {})

        result = await JWTStrategy(token_service, users).validate(
            _request(access_token=token.access_token), {}
        )

        assert isinstance(result, Fail)

    async def test_missing_token(self, users, token_service):
        result = await JWTStrategy(token_service, users).validate(_request(), {})

        assert isinstance(result, Fail)
        assert result.challenge.message == "No access token"


class TestStrategyRegistry:
    def test_register_and_names(self, users):
        registry = StrategyRegistry({"users": users})
        registry.register(LocalStrategy(users), service="users")

        assert registry.names() == ("local",)
        assert registry.is_registered("local")
        assert not registry.is_registered("jwt")
        assert not registry.is_registered(None)

    def test_get_unknown_strategy(self):
        with pytest.raises(ConfigurationError) as excinfo:
            StrategyRegistry().get("saml")

        assert excinfo.value.message == "Your 'saml' authentication strategy is not registered."

    def test_lookup_binding_by_path(self, users):
        registry = StrategyRegistry({"users": users})
        registry.register(LocalStrategy(users), service="users", entity="member")

        binding = registry.lookup_binding("local")

        assert isinstance(binding, WatcherBinding)
        assert binding.service is users
        assert binding.entity == "member"
        assert binding.id_field == "id"
        assert binding.service_path == "users"

    def test_lookup_binding_with_service_object(self, users):
        registry = StrategyRegistry()
        registry.register(LocalStrategy(users), service=users)

        assert registry.lookup_binding("local").service is users

    def test_lookup_binding_unknown_path(self, users):
        registry = StrategyRegistry()
        registry.register(LocalStrategy(users), service="accounts")

        with pytest.raises(ConfigurationError):
            registry.lookup_binding("local")

    def test_lookup_binding_without_service(self, users):
        registry = StrategyRegistry()
        registry.register(LocalStrategy(users))

        assert registry.lookup_binding("local") is None

    def test_add_service_late(self, users):
        registry = StrategyRegistry()
        registry.register(LocalStrategy(users), service="users")
        registry.add_service("users", users)

        assert registry.lookup_binding("local").service is users
