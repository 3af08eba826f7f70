from typing import Optional, Protocol

import httpx

from agent import settings
from agent.models import Job, JobStatus
from common.errors import EndpointResolutionError, RemoteUnavailable

RETRYABLE = {429, 500, 502, 503, 504}
THING_ATTRIBUTES = {"device_simulator": "true"}


class RemoteJobClient(Protocol):
    async def resolve_endpoint(self) -> str: ...
    async def register_device(self, device_id: str) -> None: ...
    async def deregister_device(self, device_id: str) -> None: ...
    async def fetch_next_job(self, device_id: str) -> Optional[Job]: ...
    async def describe_next_job(self, device_id: str) -> Optional[Job]: ...
    async def report_outcome(self, device_id: str, job: Job, outcome: JobStatus) -> None: ...
    async def aclose(self) -> None: ...


def retry_after(resp):
    try:
        return float(resp.headers.get("Retry-After", "0.5"))
    except ValueError:
        return 0.5


def parse_job(execution, op, device_id):
    """Job from a wire execution; a malformed one fails only this device."""
    try:
        return Job.from_execution(execution, device_id)
    except (ValueError, TypeError, AttributeError) as e:
        raise RemoteUnavailable(f"{op}: malformed execution {execution!r}: {e}", device_id, op) from e


class HttpJobClient:
    """Talks to the registry service REST API.

    Each method issues exactly one HTTP request; retrying is left to the
    caller, which has to pass every attempt through its rate limiter.
    """

    def __init__(self, api_base=settings.API_BASE, client=None, timeout=settings.HTTP_TIMEOUT_S):
        self.api_base = api_base.rstrip("/")
        self.endpoint = None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def _send(self, method, url, op, device_id=None, ok=(200, 201), **kw):
        try:
            r = await self.client.request(method, url, **kw)
        except httpx.TransportError as e:
            raise RemoteUnavailable(f"{op}: {type(e).__name__}: {e}", device_id, op, retryable=True) from e
        if r.status_code in ok:
            return r
        raise RemoteUnavailable(
            f"{op}: HTTP {r.status_code} {r.text[:200]}", device_id, op, status=r.status_code,
            retryable=r.status_code in RETRYABLE,
            retry_after=retry_after(r) if r.status_code == 429 else None,
        )

    def _body(self, r, op, device_id=None):
        try:
            body = r.json()
        except ValueError as e:
            raise RemoteUnavailable(f"{op}: undecodable response: {r.text[:200]}", device_id, op,
                                    status=r.status_code) from e
        if not isinstance(body, dict):
            raise RemoteUnavailable(f"{op}: unexpected response: {r.text[:200]}", device_id, op, status=r.status_code)
        return body

    def jobs_url(self, device_id, job_id="$next"):
        if not self.endpoint:
            raise EndpointResolutionError("jobs endpoint has not been resolved")
        return f"{self.endpoint}/things/{device_id}/jobs/{job_id}"

    async def resolve_endpoint(self):
        r = await self._send("GET", f"{self.api_base}/endpoint", "resolve_endpoint",
                             params={"endpointType": "iot:Jobs"})
        address = self._body(r, "resolve_endpoint").get("endpointAddress")
        if not address or not isinstance(address, str):
            raise EndpointResolutionError("registry returned no endpointAddress")
        self.endpoint = (address if "://" in address else f"https://{address}").rstrip("/")
        return self.endpoint

    async def register_device(self, device_id):
        # 409 means the thing already exists, which counts as created
        await self._send("POST", f"{self.api_base}/things", "register", device_id, ok=(200, 201, 409),
                         json={"thingName": device_id, "attributePayload": {"attributes": THING_ATTRIBUTES}})

    async def deregister_device(self, device_id):
        await self._send("DELETE", f"{self.api_base}/things/{device_id}", "deregister", device_id)

    async def fetch_next_job(self, device_id):
        r = await self._send("POST", self.jobs_url(device_id), "fetch", device_id)
        return parse_job(self._body(r, "fetch", device_id).get("execution"), "fetch", device_id)

    async def describe_next_job(self, device_id):
        r = await self._send("GET", self.jobs_url(device_id), "describe", device_id,
                             params={"includeJobDocument": "true"})
        return parse_job(self._body(r, "describe", device_id).get("execution"), "describe", device_id)

    async def report_outcome(self, device_id, job, outcome):
        await self._send("POST", self.jobs_url(device_id, job.job_id), "report", device_id,
                         json={"status": JobStatus(outcome).value, "statusDetails": {"agent": "jobs-agent"}})

    async def aclose(self):
        await self.client.aclose()
