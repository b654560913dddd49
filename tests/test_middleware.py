"""
בדיקות ל-Middleware - app/core/middleware.py

מכסה:
- CorrelationIdMiddleware: הפצת correlation ID בבקשות
- RequestLoggingMiddleware: לוג בקשות והעלאת חריגות מחדש
- SecurityHeadersMiddleware: nosniff תמיד, CSP ו-HSTS מחוץ ל-debug
- Exception handlers: טיפול ב-AppException ו-Exception גנרי
- setup_middleware: ה-stack המלא דרך האפליקציה
"""
import json
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse, JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from app.core.exceptions import (
    AppException,
    ErrorCode,
    InsufficientFundsError,
    ValidationException,
)
from app.core.middleware import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    app_exception_handler,
    generic_exception_handler,
)

from tests.conftest import auth_headers


# ============================================================================
# Helpers
# ============================================================================


def _hello(request: Request) -> PlainTextResponse:
    """endpoint מינימלי לבדיקה."""
    return PlainTextResponse("ok")


def _error(request: Request) -> PlainTextResponse:
    """endpoint שזורק שגיאה."""
    raise ValueError("שגיאת בדיקה")


def _build_app(*, middlewares: list[tuple] | None = None) -> Starlette:
    """בונה אפליקציית Starlette מינימלית עם middleware."""
    app = Starlette(routes=[Route("/test", _hello), Route("/error", _error)])
    for mw_class, kwargs in middlewares or []:
        app.add_middleware(mw_class, **kwargs)
    return app


def _request(path: str) -> AsyncMock:
    mock_request = AsyncMock(spec=Request)
    mock_request.url.path = path
    return mock_request


# ============================================================================
# בדיקות CorrelationIdMiddleware
# ============================================================================


class TestCorrelationIdMiddleware:
    """בדיקות להפצת Correlation ID"""

    @pytest.mark.unit
    def test_generates_correlation_id_when_missing(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.status_code == 200
            assert len(response.headers["x-correlation-id"]) == 8

    @pytest.mark.unit
    def test_preserves_existing_correlation_id(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test", headers={"X-Correlation-ID": "rider-app-42"})
            assert response.headers["x-correlation-id"] == "rider-app-42"

    @pytest.mark.unit
    def test_correlation_id_unique_per_request(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            first = client.get("/test").headers["x-correlation-id"]
            second = client.get("/test").headers["x-correlation-id"]
            assert first != second


# ============================================================================
# בדיקות RequestLoggingMiddleware
# ============================================================================


class TestRequestLoggingMiddleware:

    @pytest.mark.unit
    def test_successful_request_passes_through(self) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test", params={"page": 2})
            assert response.status_code == 200
            assert response.text == "ok"

    @pytest.mark.unit
    def test_exception_in_handler_reraised(self) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/error")
            assert response.status_code == 500

    @pytest.mark.unit
    def test_exception_reaches_the_caller(self) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with TestClient(app) as client:
            with pytest.raises(ValueError):
                client.get("/error")


# ============================================================================
# בדיקות SecurityHeadersMiddleware
# ============================================================================


class TestSecurityHeadersMiddleware:

    @pytest.mark.unit
    def test_production_headers(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": False})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.headers["x-content-type-options"] == "nosniff"
            assert response.headers["content-security-policy"] == "upgrade-insecure-requests"
            assert response.headers["strict-transport-security"] == "max-age=31536000; includeSubDomains"

    @pytest.mark.unit
    def test_debug_keeps_plain_http_working(self) -> None:
        """במצב debug - אין CSP ו-HSTS, אבל nosniff נשאר"""
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": True})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.headers["x-content-type-options"] == "nosniff"
            assert "content-security-policy" not in response.headers
            assert "strict-transport-security" not in response.headers


# ============================================================================
# בדיקות Exception Handlers
# ============================================================================


class TestAppExceptionHandler:

    @pytest.mark.asyncio
    async def test_handles_app_exception(self) -> None:
        exc = AppException(
            message="משלוח לא נמצא",
            error_code=ErrorCode.DELIVERY_NOT_FOUND,
            status_code=404,
            details={"delivery_id": "d-1"},
        )

        response = await app_exception_handler(_request("/api/deliveries/d-1"), exc)

        assert isinstance(response, JSONResponse)
        assert response.status_code == 404
        assert "x-correlation-id" in response.headers
        body = json.loads(response.body)
        assert body == {
            "error": {"code": "ERR_3001", "message": "משלוח לא נמצא", "details": {"delivery_id": "d-1"}},
        }

    @pytest.mark.asyncio
    async def test_handles_validation_exception(self) -> None:
        exc = ValidationException(message="מספר חשבון לא תקין", field="account_number")

        response = await app_exception_handler(_request("/api/wallets"), exc)

        assert response.status_code == 400
        assert json.loads(response.body)["error"]["details"]["field"] == "account_number"

    @pytest.mark.asyncio
    async def test_insufficient_funds_carries_amounts(self) -> None:
        exc = InsufficientFundsError("w-1", Decimal("100.00"), Decimal("250.00"))

        response = await app_exception_handler(_request("/api/wallets/w-1/withdrawals"), exc)

        details = json.loads(response.body)["error"]["details"]
        assert response.status_code == 400
        assert details["available_balance"] == "100.00"
        assert details["requested_amount"] == "250.00"


class TestGenericExceptionHandler:

    @pytest.mark.asyncio
    async def test_handles_unexpected_exception(self) -> None:
        response = await generic_exception_handler(_request("/api/something"), RuntimeError("boom"))

        assert isinstance(response, JSONResponse)
        assert response.status_code == 500
        assert "x-correlation-id" in response.headers

    @pytest.mark.asyncio
    async def test_does_not_leak_internal_details(self) -> None:
        exc = RuntimeError("database connection failed on host 10.0.0.1")

        response = await generic_exception_handler(_request("/api/test"), exc)

        body = response.body.decode()
        assert "10.0.0.1" not in body
        assert "database connection" not in body
        assert json.loads(body)["error"] == {
            "code": "ERR_1000",
            "message": "An unexpected error occurred",
            "details": {},
        }


# ============================================================================
# בדיקות setup_middleware
# ============================================================================


class TestSetupMiddleware:

    @pytest.mark.asyncio
    async def test_full_middleware_stack(self, test_client) -> None:
        """כל ה-middleware stack עובד יחד - בדיקה דרך test_client"""
        response = await test_client.get("/health")

        assert response.status_code == 200
        assert "x-correlation-id" in response.headers
        assert response.headers.get("x-content-type-options") == "nosniff"

    @pytest.mark.asyncio
    async def test_headers_on_error_responses(self, test_client) -> None:
        """גם תשובת 401 עוברת דרך ה-stack"""
        response = await test_client.get("/api/deliveries/available")

        assert response.status_code == 401
        assert "x-correlation-id" in response.headers
        assert response.headers.get("x-content-type-options") == "nosniff"

    @pytest.mark.asyncio
    async def test_correlation_id_echoed_on_app_errors(self, test_client, admin) -> None:
        response = await test_client.get(
            "/api/orders/00000000-0000-0000-0000-000000000000",
            headers={**auth_headers(admin), "X-Correlation-ID": "trace-404"},
        )

        assert response.status_code == 404
        assert response.headers["x-correlation-id"] == "trace-404"
