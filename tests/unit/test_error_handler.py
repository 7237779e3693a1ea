"""Unit tests for the error hierarchy and FastAPI exception handlers."""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel

from egress_sidecar.middleware.error_handler import (
    AlreadyRunningError,
    ClientConnectionError,
    ConfigurationError,
    EgressError,
    FeatureDisabledError,
    InstallationError,
    OperationInProgressError,
    ProbeTimeoutError,
    ProxyModeError,
    RoutingError,
    register_error_handlers,
)


# ---------------------------------------------------------------------------
# Test app fixture
# ---------------------------------------------------------------------------


class _Body(BaseModel):
    port: int


def _make_app() -> FastAPI:
    """Build a minimal FastAPI app with error handlers registered."""
    app = FastAPI()
    register_error_handlers(app)

    @app.get("/raise-install")
    async def _raise_install():
        raise InstallationError("apt-get failed", os_family="debian")

    @app.get("/raise-busy")
    async def _raise_busy():
        raise OperationInProgressError()

    @app.get("/raise-disabled")
    async def _raise_disabled():
        raise FeatureDisabledError()

    @app.get("/raise-unhandled")
    async def _raise_unhandled():
        raise RuntimeError("boom")

    @app.post("/validate")
    async def _validate(body: _Body):
        return {"port": body.port}

    return app


@pytest.fixture
def client() -> TestClient:
    return TestClient(_make_app(), raise_server_exceptions=False)


# ---------------------------------------------------------------------------
# Error hierarchy
# ---------------------------------------------------------------------------


class TestErrorHierarchy:
    @pytest.mark.parametrize(
        ("error_cls", "status"),
        [
            (InstallationError, 502),
            (ConfigurationError, 422),
            (ClientConnectionError, 502),
            (ProxyModeError, 409),
            (RoutingError, 500),
            (ProbeTimeoutError, 504),
            (AlreadyRunningError, 409),
            (OperationInProgressError, 409),
            (FeatureDisabledError, 403),
        ],
    )
    def test_status_codes(self, error_cls, status):
        error = error_cls()
        assert isinstance(error, EgressError)
        assert error.status_code == status
        assert error.message

    def test_custom_message_and_details(self):
        error = RoutingError("iptables missing", chain="EGRESS-PROXY")
        assert str(error) == "iptables missing"
        assert error.details == {"chain": "EGRESS-PROXY"}


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


class TestHandlers:
    def test_egress_error_envelope(self, client: TestClient):
        resp = client.get("/raise-install")
        assert resp.status_code == 502
        body = resp.json()
        assert body["success"] is False
        assert body["message"] == "apt-get failed"
        assert body["in_progress"] is False
        assert body["data"] == {"os_family": "debian"}

    def test_in_progress_flag(self, client: TestClient):
        body = client.get("/raise-busy").json()
        assert body["in_progress"] is True
        assert body["data"] is None

    def test_feature_disabled(self, client: TestClient):
        resp = client.get("/raise-disabled")
        assert resp.status_code == 403
        assert "disabled" in resp.json()["message"]

    def test_unhandled_is_generic_500(self, client: TestClient):
        resp = client.get("/raise-unhandled")
        assert resp.status_code == 500
        assert resp.json()["message"] == "Internal server error"
        assert "boom" not in resp.text

    def test_validation_error(self, client: TestClient):
        resp = client.post("/validate", json={"port": "not-a-number"})
        assert resp.status_code == 422
        fields = resp.json()["data"]["fields"]
        assert fields[0]["field"].endswith("port")
