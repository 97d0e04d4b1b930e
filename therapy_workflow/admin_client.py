"""
Async client for the admin REST endpoints.

Every non-2xx response, transport failure or unparseable body is raised as a
``WorkflowError`` so the mutation controller can classify and roll back.
"""

from typing import Any, TypeVar

import httpx
import pydantic
import structlog

from therapy_workflow.config import settings
from therapy_workflow.errors import TransientError, error_from_response
from therapy_workflow.models import (
    Assignment,
    AssignTherapistRequest,
    AssignTherapistResponse,
    Client,
    CreateAccountResponse,
    Enquiry,
    NotificationRecord,
    ResetPasswordResponse,
    StatusHistoryEntry,
    Therapist,
)

log = structlog.get_logger()

ModelT = TypeVar("ModelT", bound=pydantic.BaseModel)

UNEXPECTED_RESPONSE = "Unexpected response from server"


class AdminApiClient:
    def __init__(
        self,
        http: httpx.AsyncClient | None = None,
        *,
        base_url: str | None = None,
        actor_id: str | None = None,
    ) -> None:
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(
            base_url=base_url or settings.api_base_url,
            timeout=settings.request_timeout_seconds,
        )
        self.actor_id = actor_id

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def __aenter__(self) -> "AdminApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        request_headers = dict(headers or {})
        if self.actor_id:
            request_headers["X-Admin-Id"] = self.actor_id
        try:
            response = await self.http.request(
                method, url, json=json, params=params, headers=request_headers
            )
        except httpx.HTTPError as e:
            log.warning("admin_api_transport_error", method=method, url=url, error=str(e))
            raise TransientError(f"Could not reach the server: {e}") from e

        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = response.text
            error = error_from_response(response.status_code, body)
            log.info(
                "admin_api_error",
                method=method,
                url=url,
                status_code=response.status_code,
                error=error.code,
            )
            raise error
        try:
            return response.json()
        except ValueError as e:
            log.warning(
                "admin_api_unreadable_response",
                method=method,
                url=url,
                content_type=response.headers.get("content-type"),
            )
            raise TransientError(
                UNEXPECTED_RESPONSE, status_code=response.status_code
            ) from e

    def _parse(self, model: type[ModelT], data: Any) -> ModelT:
        try:
            return model.model_validate(data)
        except pydantic.ValidationError as e:
            log.warning(
                "admin_api_invalid_payload", model=model.__name__, errors=e.error_count()
            )
            raise TransientError(UNEXPECTED_RESPONSE) from e

    def _parse_list(self, model: type[ModelT], data: Any) -> list[ModelT]:
        if not isinstance(data, list):
            log.warning("admin_api_invalid_payload", model=model.__name__, errors=1)
            raise TransientError(UNEXPECTED_RESPONSE)
        return [self._parse(model, item) for item in data]

    # Enquiries

    async def list_enquiries(self) -> list[Enquiry]:
        data = await self._request("GET", "/api/admin/therapist-enquiries")
        return self._parse_list(Enquiry, data)

    async def update_enquiry_status(self, enquiry_id: str, status: str) -> Enquiry:
        data = await self._request(
            "PUT",
            f"/api/admin/therapist-enquiries/{enquiry_id}/status",
            json={"status": status},
        )
        return self._parse(Enquiry, data)

    async def update_enquiry_tier(self, enquiry_id: str, tier: str) -> Enquiry:
        data = await self._request(
            "PUT",
            f"/api/admin/therapist-enquiries/{enquiry_id}/tier",
            json={"therapist_tier": tier},
        )
        return self._parse(Enquiry, data)

    async def create_therapist_account(self, enquiry: Enquiry) -> CreateAccountResponse:
        data = await self._request(
            "POST",
            "/api/admin/create-therapist-account",
            json={
                "enquiry_id": enquiry.id,
                "email": enquiry.email,
                "first_name": enquiry.first_name,
                "last_name": enquiry.last_name,
            },
        )
        return self._parse(CreateAccountResponse, data)

    async def reset_therapist_password(self, email: str) -> ResetPasswordResponse:
        data = await self._request(
            "POST", "/api/admin/reset-therapist-password", json={"email": email}
        )
        return self._parse(ResetPasswordResponse, data)

    # Clients, therapists, assignments

    async def list_clients(self, status: str = "all") -> list[Client]:
        data = await self._request("GET", "/api/admin/clients", params={"status": status})
        return self._parse_list(Client, data)

    async def update_client_status(self, client_id: str, status: str) -> Client:
        data = await self._request(
            "PUT", f"/api/admin/clients/{client_id}/status", json={"status": status}
        )
        return self._parse(Client, data)

    async def list_therapists(self, status: str = "available") -> list[Therapist]:
        data = await self._request("GET", "/api/admin/therapists", params={"status": status})
        return self._parse_list(Therapist, data)

    async def list_assignments(self) -> list[Assignment]:
        data = await self._request("GET", "/api/admin/client-therapist-assignments")
        return self._parse_list(Assignment, data)

    async def get_recommendations(self, client_id: str) -> list[dict[str, Any]]:
        """Raw scorer output; the ranking client normalises it."""
        data = await self._request(
            "POST", "/api/admin/ai-recommendations", json={"clientId": client_id}
        )
        if data is None:
            return []
        if not isinstance(data, list):
            raise TransientError(UNEXPECTED_RESPONSE)
        return data

    async def assign_therapist(
        self, request: AssignTherapistRequest, *, idempotency_key: str | None = None
    ) -> AssignTherapistResponse:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        data = await self._request(
            "POST",
            "/api/admin/assign-therapist",
            json=request.model_dump(by_alias=True, mode="json"),
            headers=headers,
        )
        return self._parse(AssignTherapistResponse, data)

    async def revoke_assignment(self, client_id: str, reason: str | None = None) -> Client:
        data = await self._request(
            "POST",
            "/api/admin/revoke-assignment",
            json={"clientId": client_id, "reason": reason},
        )
        return self._parse(Client, data)

    async def retry_notification(self, assignment_id: str) -> NotificationRecord:
        data = await self._request("POST", f"/api/admin/assignments/{assignment_id}/notify")
        return self._parse(NotificationRecord, data)

    async def status_history(self, entity_id: str) -> list[StatusHistoryEntry]:
        data = await self._request("GET", f"/api/admin/status-history/{entity_id}")
        return self._parse_list(StatusHistoryEntry, data)
