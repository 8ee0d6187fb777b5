"""Fake collaborators shared by the socket authentication tests."""

import asyncio

from sockauth.service.tokens import Token


class CountingTokenService:
    """Wraps a token service and records every issue/invalidate call."""

    def __init__(self, inner):
        self.inner = inner
        self.issued: list[str] = []
        self.invalidated: list[str] = []
        self.issue_params: list[dict] = []

    async def issue(self, principal, params):
        token = await self.inner.issue(principal, params)
        self.issued.append(token.access_token)
        self.issue_params.append(dict(params))
        return token

    async def invalidate(self, access_token, params):
        self.invalidated.append(access_token)
        return await self.inner.invalidate(access_token, params)

    async def verify(self, access_token):
        return await self.inner.verify(access_token)


class SequenceTokenService:
    """Issues predictable tokens ``T1``, ``T2``, ... for scenario tests."""

    def __init__(self):
        self.counter = 0
        self.issued: list[str] = []
        self.invalidated: list[str] = []

    async def issue(self, principal, params):
        self.counter += 1
        token = f"T{self.counter}"
        self.issued.append(token)
        return Token(access_token=token)

    async def invalidate(self, access_token, params):
        self.invalidated.append(access_token)
        return Token(access_token=access_token, metadata={"revoked": True})

    async def verify(self, access_token):
        return None


class StaticStrategy:
    """Strategy returning a fixed outcome and remembering what it was asked."""

    def __init__(self, name, result):
        self.name = name
        self.result = result
        self.requests = []

    async def validate(self, request, options):
        self.requests.append(request)
        return self.result


class SlowStrategy(StaticStrategy):
    """Suspends mid-validation so other operations can queue up behind it."""

    def __init__(self, name, result, delay=0.05):
        super().__init__(name, result)
        self.delay = delay
        self.started = asyncio.Event()

    async def validate(self, request, options):
        self.requests.append(request)
        self.started.set()
        await asyncio.sleep(self.delay)
        return self.result


class EventRecorder:
    def __init__(self, bus):
        self.logins = []
        self.logouts = []
        bus.on("login", lambda token, ctx: self.logins.append((token, ctx)))
        bus.on("logout", lambda token, ctx: self.logouts.append((token, ctx)))


class CallbackRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, error, result):
        self.calls.append((error, result))

