import asyncio
import json

import pytest

from config import Settings
from siigo_auth import TokenManager
from siigo_documents import SiigoClient
from siigo_http import UpstreamResponse

AUTH_URL = "https://siigo.test/auth"
BASE_URL = "https://siigo.test/v1"
START_TIME = 1_700_000_000.0


def make_response(status=200, body=None, headers=None, text=None):
    if text is None:
        text = "" if body is None else json.dumps(body)
    return UpstreamResponse(status=status, headers=headers or {}, text=text)


def token_response(token="tok-1", expires_in=3600):
    body = {"access_token": token}
    if expires_in is not None:
        body["expires_in"] = expires_in
    return make_response(200, body)


class FakeTransport:
    """
    Responde en orden las respuestas encoladas para cada (método, url).
    La última respuesta de cada cola se repite indefinidamente.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.auth_gate = None

    def add(self, method, url, *responses):
        self.routes.setdefault((method, url), []).extend(responses)

    def calls_to(self, method, url):
        return [c for c in self.calls if c["method"] == method and c["url"] == url]

    async def send(self, method, url, *, headers, params=None, json_body=None):
        self.calls.append({
            "method": method,
            "url": url,
            "headers": dict(headers),
            "params": dict(params) if params else None,
            "json": json_body,
        })
        await asyncio.sleep(0)
        if self.auth_gate is not None and url == AUTH_URL:
            await self.auth_gate.wait()
        queue = self.routes.get((method, url))
        if not queue:
            raise AssertionError(f"Llamada inesperada: {method} {url}")
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakeClock:
    def __init__(self, now=START_TIME):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture()
def settings():
    return Settings(
        base_url=BASE_URL,
        auth_url=AUTH_URL,
        username="compras@empresa.co",
        access_key="clave-secreta",
        partner_id="FacturacionApp",
        default_payment_id=8467,
    )


@pytest.fixture()
def transport():
    return FakeTransport()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def sleeper():
    return SleepRecorder()


@pytest.fixture()
def token_manager(settings, transport, clock, sleeper):
    return TokenManager(settings.credential(), settings.auth_url, transport, clock=clock, sleep=sleeper)


@pytest.fixture()
def client(settings, token_manager, transport, sleeper):
    return SiigoClient(settings, token_manager, transport, sleep=sleeper)
