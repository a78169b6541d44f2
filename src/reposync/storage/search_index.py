"""Search backend client: uploads JSON document batches with bounded retry."""

import logging
import time
from typing import Callable, Optional

import boto3
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_delay,
    wait_fixed,
)

from reposync.errors import TransientBackendError

logger = logging.getLogger(__name__)

_TRANSIENT_CODES = {"Throttling", "ThrottlingException", "ServiceUnavailable", "RequestTimeout"}


def classify_error(error: Exception) -> Exception:
    """Map a botocore failure to TransientBackendError when it is worth retrying.

    Timeouts, HTTP 408 and 5xx responses, throttling and service-unavailable
    errors are transient. Anything else is returned unchanged.
    """
    if isinstance(error, (ReadTimeoutError, ConnectTimeoutError, EndpointConnectionError)):
        return TransientBackendError(str(error))
    if isinstance(error, ClientError):
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        code = error.response.get("Error", {}).get("Code")
        if status == 408 or (status is not None and 500 <= status < 600) or code in _TRANSIENT_CODES:
            return TransientBackendError(str(error), status_code=status)
    return error


class SearchIndex:
    """Thin wrapper over the CloudSearch document service."""

    def __init__(
        self,
        endpoint: Optional[str] = None,
        backoff: float = 30,
        budget: float = 600,
        client=None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize search index client.

        Args:
            endpoint: Document endpoint URL of the search domain
            backoff: Seconds to wait between retries
            budget: Total seconds to keep retrying before giving up
            client: Pre-built ``cloudsearchdomain`` client, mainly for tests
            sleep: Sleep function used between retries
        """
        if client is None:
            client = boto3.client("cloudsearchdomain", endpoint_url=endpoint)
        self.client = client
        self.backoff = backoff
        self.budget = budget
        self.sleep = sleep
        self.uploads = 0

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_delay(self.budget),
            wait=wait_fixed(self.backoff),
            retry=retry_if_exception_type(TransientBackendError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self.sleep,
            reraise=True,
        )

    def _upload_once(self, documents: bytes) -> dict:
        try:
            return self.client.upload_documents(documents=documents, contentType="application/json")
        except (ClientError, ReadTimeoutError, ConnectTimeoutError, EndpointConnectionError) as e:
            classified = classify_error(e)
            if classified is e:
                raise
            raise classified from e

    def upload(self, documents: bytes) -> dict:
        """Send a JSON array of add/delete documents.

        Transient failures are retried with a fixed backoff until the budget
        runs out, after which the last error is raised.

        Args:
            documents: Serialized JSON array

        Returns:
            Backend response

        Raises:
            TransientBackendError: If the retry budget is exhausted
            ClientError: For non-transient backend errors
        """
        response = None
        for attempt in self._retrying():
            with attempt:
                response = self._upload_once(documents)
        self.uploads += 1
        status = (response or {}).get("status")
        logger.debug(f"Search upload status={status} adds={(response or {}).get('adds')}")
        return response
