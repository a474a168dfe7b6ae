import asyncio
from typing import Optional

import httpx

from geoclock.errors import NetworkError, ServerRejection
from geoclock.models import ClockPayload, Shift, ShiftRef, WorkLocation

CLOCK_IN_MUTATION = """
mutation ClockIn($note: String, $lat: Float!, $lng: Float!, $manualOverride: Boolean) {
  clockIn(note: $note, lat: $lat, lng: $lng, manualOverride: $manualOverride) { id clockInAt }
}
"""

CLOCK_OUT_MUTATION = """
mutation ClockOut($note: String, $lat: Float!, $lng: Float!, $manualOverride: Boolean) {
  clockOut(note: $note, lat: $lat, lng: $lng, manualOverride: $manualOverride) { id clockOutAt }
}
"""

SHIFTS_QUERY = """
query MyShifts {
  shifts { id clockInAt clockOutAt clockInLat clockInLng clockOutLat clockOutLng clockInNote clockOutNote }
}
"""

LOCATIONS_QUERY = """
query Locations($active: Boolean) {
  locations(active: $active) { id name latitude longitude radiusKm active }
}
"""

NETWORK_ERRORS = (
    httpx.ConnectTimeout,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.PoolTimeout,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.RemoteProtocolError,
)


class ClockApiClient:
    def __init__(
        self,
        graphql_url: str,
        api_token: str,
        logger,
        *,
        health_url: str | None = None,
        timeout_sec: float = 10.0,
        network_backoff: tuple[float, ...] = (0.3, 0.8),
    ) -> None:
        self.graphql_url = str(graphql_url or "").rstrip("/")
        self.health_url = health_url or self._default_health_url(self.graphql_url)
        self.api_token = api_token
        self.logger = logger
        self.network_backoff = tuple(network_backoff)
        headers = {"User-Agent": "geoclock-agent/1.0"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_sec, connect=min(5.0, timeout_sec)),
            headers=headers,
            follow_redirects=True,
        )

    @staticmethod
    def _default_health_url(graphql_url: str) -> str:
        if graphql_url.endswith("/graphql"):
            return graphql_url[: -len("/graphql")] + "/health-check"
        return graphql_url

    async def aclose(self) -> None:
        await self._client.aclose()

    def _require_config(self) -> None:
        if not self.graphql_url:
            raise RuntimeError("GRAPHQL_URL is not set.")

    async def _request(self, operation: str, query: str, variables: Optional[dict] = None) -> dict:
        self._require_config()
        body = {"query": query, "variables": variables or {}}

        for attempt in range(1, len(self.network_backoff) + 2):
            self.logger.info("API_REQUEST attempt=%s operation=%s", attempt, operation)
            try:
                response = await self._client.post(self.graphql_url, json=body)
            except NETWORK_ERRORS as exc:
                self.logger.warning(
                    "API_REQUEST_EXCEPTION attempt=%s operation=%s error_type=%s error=%s",
                    attempt,
                    operation,
                    type(exc).__name__,
                    exc,
                )
                if attempt <= len(self.network_backoff):
                    await asyncio.sleep(self.network_backoff[attempt - 1])
                    continue
                raise NetworkError(f"{operation}: {type(exc).__name__}") from exc
            except httpx.HTTPError as exc:
                self.logger.warning(
                    "API_REQUEST_EXCEPTION attempt=%s operation=%s error_type=%s error=%s",
                    attempt,
                    operation,
                    type(exc).__name__,
                    exc,
                )
                raise NetworkError(f"{operation}: {type(exc).__name__}") from exc

            if response.status_code >= 500:
                self.logger.error(
                    "API_ERROR_STATUS operation=%s status=%s",
                    operation,
                    response.status_code,
                )
                raise NetworkError(f"{operation}: status={response.status_code}")

            payload = None
            try:
                parsed = response.json()
                payload = parsed if isinstance(parsed, dict) else None
            except ValueError:
                payload = None

            if response.status_code >= 400:
                self.logger.warning(
                    "API_NON_2XX operation=%s status=%s body=%s",
                    operation,
                    response.status_code,
                    response.text[:300],
                )
                message = self._error_message(payload) or f"HTTP {response.status_code}"
                raise ServerRejection(message, status=response.status_code)

            if payload is None:
                self.logger.error("API_ERROR_JSON operation=%s body=%s", operation, response.text[:300])
                raise NetworkError(f"{operation}: invalid JSON response")

            message = self._error_message(payload)
            if message:
                self.logger.warning("API_GRAPHQL_ERROR operation=%s error=%s", operation, message)
                raise ServerRejection(message, status=response.status_code)

            data = payload.get("data")
            return data if isinstance(data, dict) else {}

        raise NetworkError(f"{operation}: retries exhausted")

    @staticmethod
    def _error_message(payload: Optional[dict]) -> Optional[str]:
        if not isinstance(payload, dict):
            return None
        errors = payload.get("errors")
        if not errors:
            return None
        if isinstance(errors, list):
            messages = [str(item.get("message")) for item in errors if isinstance(item, dict) and item.get("message")]
            return "; ".join(messages) or "GraphQL error"
        return str(errors)

    async def clock_in(self, payload: ClockPayload) -> ShiftRef:
        data = await self._request("clockIn", CLOCK_IN_MUTATION, payload.mutation_variables())
        result = data.get("clockIn")
        if not isinstance(result, dict) or result.get("id") is None:
            raise ServerRejection("clockIn returned no shift")
        return ShiftRef(id=str(result["id"]), timestamp=result.get("clockInAt"))

    async def clock_out(self, payload: ClockPayload) -> ShiftRef:
        data = await self._request("clockOut", CLOCK_OUT_MUTATION, payload.mutation_variables())
        result = data.get("clockOut")
        if not isinstance(result, dict) or result.get("id") is None:
            raise ServerRejection("clockOut returned no shift")
        return ShiftRef(id=str(result["id"]), timestamp=result.get("clockOutAt"))

    async def shifts(self) -> list[Shift]:
        data = await self._request("shifts", SHIFTS_QUERY)
        raw_shifts = data.get("shifts")
        if not isinstance(raw_shifts, list):
            return []
        return [Shift.from_api(item) for item in raw_shifts if isinstance(item, dict) and item.get("id") is not None]

    async def locations(self, active: bool | None = True) -> list[WorkLocation]:
        data = await self._request("locations", LOCATIONS_QUERY, {"active": active})
        raw_locations = data.get("locations")
        if not isinstance(raw_locations, list):
            return []

        result: list[WorkLocation] = []
        for item in raw_locations:
            if not isinstance(item, dict):
                continue
            try:
                lat = float(item.get("latitude"))
                lng = float(item.get("longitude"))
            except (TypeError, ValueError):
                self.logger.warning("LOCATION_SKIPPED_BAD_COORDS location=%s", item)
                continue
            try:
                radius_km = float(item.get("radiusKm") or 0.1)
            except (TypeError, ValueError):
                radius_km = 0.1
            result.append(WorkLocation(lat=lat, lng=lng, radius_km=radius_km, name=item.get("name") or "Work Location"))
        return result

    async def health_check(self) -> bool:
        try:
            response = await self._client.head(self.health_url, headers={"Cache-Control": "no-cache"})
        except httpx.HTTPError as exc:
            self.logger.info("API_HEALTH_CHECK ok=False error_type=%s", type(exc).__name__)
            return False
        ok = 200 <= response.status_code < 300
        self.logger.info("API_HEALTH_CHECK ok=%s status=%s", ok, response.status_code)
        return ok
