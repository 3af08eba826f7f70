"""AWS IoT registry + IoT Jobs data plane adapter.

boto3 clients are blocking, so every call runs in a worker thread.
"""
import asyncio

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from agent import settings
from agent.client import THING_ATTRIBUTES, parse_job
from agent.models import JobStatus
from common.errors import ConfigurationError, EndpointResolutionError, RemoteUnavailable

THROTTLING = {"ThrottlingException", "TooManyRequestsException", "ServiceUnavailableException",
              "InternalFailureException", "InternalException"}


def client_config(region=None, proxy=None):
    return Config(region_name=region or settings.aws_region(),
                  proxies={"http": proxy, "https": proxy} if proxy else None,
                  retries={"max_attempts": 1})


class AwsIotJobClient:
    def __init__(self, region=None, proxy=None, iot=None, jobs=None):
        self.config = client_config(region, proxy if proxy is not None else settings.proxy_url())
        try:
            self.iot = iot or boto3.client("iot", config=self.config)
        except BotoCoreError as e:
            raise ConfigurationError(f"cannot initialise the AWS IoT client: {e}") from e
        self.jobs = jobs
        self.endpoint = None

    async def _call(self, client, method, op, device_id=None, **params):
        try:
            return await asyncio.to_thread(getattr(client, method), **params)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            raise RemoteUnavailable(f"{op}: {code}: {e}", device_id, op,
                                    status=e.response.get("ResponseMetadata", {}).get("HTTPStatusCode"),
                                    retryable=code in THROTTLING) from e
        except BotoCoreError as e:
            raise RemoteUnavailable(f"{op}: {e}", device_id, op, retryable=True) from e

    def jobs_client(self):
        if self.jobs is None:
            raise EndpointResolutionError("jobs endpoint has not been resolved")
        return self.jobs

    async def resolve_endpoint(self):
        data = await self._call(self.iot, "describe_endpoint", "resolve_endpoint", endpointType="iot:Jobs")
        address = data.get("endpointAddress")
        if not address:
            raise EndpointResolutionError("describe_endpoint returned no endpointAddress")
        self.endpoint = f"https://{address}"
        if self.jobs is None:
            try:
                self.jobs = boto3.client("iot-jobs-data", endpoint_url=self.endpoint, config=self.config)
            except BotoCoreError as e:
                raise EndpointResolutionError(f"cannot open the jobs endpoint {self.endpoint}: {e}") from e
        return self.endpoint

    async def register_device(self, device_id):
        try:
            await self._call(self.iot, "create_thing", "register", device_id, thingName=device_id,
                             attributePayload={"attributes": THING_ATTRIBUTES})
        except RemoteUnavailable as e:
            if "ResourceAlreadyExistsException" not in str(e):
                raise

    async def deregister_device(self, device_id):
        await self._call(self.iot, "delete_thing", "deregister", device_id, thingName=device_id)

    async def fetch_next_job(self, device_id):
        data = await self._call(self.jobs_client(), "start_next_pending_job_execution", "fetch", device_id,
                                thingName=device_id)
        return parse_job(data.get("execution"), "fetch", device_id)

    async def describe_next_job(self, device_id):
        try:
            data = await self._call(self.jobs_client(), "describe_job_execution", "describe", device_id,
                                    thingName=device_id, jobId="$next", includeJobDocument=True)
        except RemoteUnavailable as e:
            # no pending execution is reported as ResourceNotFound by the data plane
            if "ResourceNotFoundException" in str(e):
                return None
            raise
        execution = data.get("execution")
        if isinstance(execution, dict) and isinstance(execution.get("jobDocument"), str):
            execution = {**execution, "jobDocument": {"raw": execution["jobDocument"]}}
        return parse_job(execution, "describe", device_id)

    async def report_outcome(self, device_id, job, outcome):
        await self._call(self.jobs_client(), "update_job_execution", "report", device_id,
                         jobId=job.job_id, thingName=device_id, status=JobStatus(outcome).value)

    async def aclose(self):
        for c in (self.iot, self.jobs):
            if c is not None:
                c.close()
