import time
import uuid
from typing import Any, Dict, List, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from content_pipeline.application.ports.index_ports import FulltextIndexPort
from content_pipeline.core.config import settings
from content_pipeline.core.exceptions import IndexBackendError, IndexRejectedError

log = structlog.get_logger(__name__)

_FINISHED_TASK_STATUSES = {"succeeded", "failed", "canceled"}


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return isinstance(exc, httpx.RequestError)


class MeilisearchFulltextAdapter(FulltextIndexPort):
    """
    Full-text backend on the Meilisearch REST API.

    Meilisearch applies writes asynchronously; every write waits for its task so
    a rejected batch surfaces as an error of the call that sent it.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        index_uid: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        task_timeout: Optional[float] = None,
    ):
        self.base_url = base_url or settings.MEILISEARCH_URL
        self.index_uid = index_uid or settings.MEILISEARCH_INDEX
        if api_key is None and settings.MEILISEARCH_API_KEY is not None:
            api_key = settings.MEILISEARCH_API_KEY.get_secret_value()
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = client or httpx.Client(
            base_url=self.base_url,
            timeout=settings.HTTP_CLIENT_TIMEOUT,
            headers=headers,
        )
        self.task_timeout = task_timeout if task_timeout is not None else settings.MEILISEARCH_TASK_TIMEOUT_SECONDS
        self.log = log.bind(component="MeilisearchFulltextAdapter", index=self.index_uid)

    def close(self):
        self.client.close()
        self.log.info("Meilisearch client closed.")

    @retry(
        stop=stop_after_attempt(settings.HTTP_CLIENT_MAX_RETRIES + 1),
        wait=wait_exponential(multiplier=settings.HTTP_CLIENT_BACKOFF_FACTOR, min=1, max=10),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
    )
    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> httpx.Response:
        self.log.debug("Requesting Meilisearch", method=method, endpoint=endpoint)
        try:
            response = self.client.request(method=method, url=endpoint, params=params, json=json)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            self.log.error("HTTP error from Meilisearch", status_code=e.response.status_code, detail=e.response.text)
            raise
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            self.log.error("Network error when calling Meilisearch", error=str(e))
            raise

    def _call(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self._request(method, endpoint, **kwargs)
        except httpx.HTTPStatusError as e:
            if _is_retryable(e):
                raise IndexBackendError(f"Meilisearch unavailable ({e.response.status_code}) on {endpoint}") from e
            raise IndexRejectedError(
                f"Meilisearch rejected {method} {endpoint} ({e.response.status_code}): {e.response.text}"
            ) from e
        except httpx.RequestError as e:
            raise IndexBackendError(f"Meilisearch request failed on {endpoint}: {e}") from e
        return response.json() if response.content else {}

    def _wait_for_task(self, task: Dict[str, Any], tolerated_codes: tuple = ()) -> Dict[str, Any]:
        task_uid = task.get("taskUid")
        if task_uid is None:
            return task
        deadline = time.monotonic() + self.task_timeout
        delay = 0.05
        while True:
            info = self._call("GET", f"/tasks/{task_uid}")
            status = info.get("status")
            if status in _FINISHED_TASK_STATUSES:
                break
            if time.monotonic() >= deadline:
                raise IndexBackendError(f"Meilisearch task {task_uid} still '{status}' after {self.task_timeout}s")
            time.sleep(delay)
            delay = min(delay * 2, 1.0)

        if status == "succeeded":
            return info
        error = info.get("error") or {}
        if error.get("code") in tolerated_codes:
            return info
        message = f"Meilisearch task {task_uid} {status}: {error.get('code')}: {error.get('message')}"
        if status == "failed" and error.get("type") == "invalid_request":
            raise IndexRejectedError(message)
        raise IndexBackendError(message)

    def ensure_index(self) -> None:
        task = self._call("POST", "/indexes", json={"uid": self.index_uid, "primaryKey": "id"})
        self._wait_for_task(task, tolerated_codes=("index_already_exists",))
        task = self._call(
            "PATCH",
            f"/indexes/{self.index_uid}/settings",
            json={
                "filterableAttributes": ["document_id"],
                "sortableAttributes": ["sequence_index"],
                "searchableAttributes": ["text", "section_title"],
            },
        )
        self._wait_for_task(task)
        self.log.info("Meilisearch index ensured.")

    def upsert_documents(self, docs: List[Dict[str, Any]]) -> None:
        if not docs:
            return
        task = self._call(
            "POST", f"/indexes/{self.index_uid}/documents", params={"primaryKey": "id"}, json=docs
        )
        self._wait_for_task(task)
        self.log.debug("Documents upserted into Meilisearch", count=len(docs))

    def delete_documents(self, ids: List[str]) -> None:
        if not ids:
            return
        task = self._call("POST", f"/indexes/{self.index_uid}/documents/delete-batch", json=ids)
        self._wait_for_task(task)
        self.log.debug("Documents deleted from Meilisearch", count=len(ids))

    def delete_by_document(self, document_id: uuid.UUID) -> None:
        task = self._call(
            "POST",
            f"/indexes/{self.index_uid}/documents/delete",
            json={"filter": f"document_id = '{document_id}'"},
        )
        self._wait_for_task(task)
        self.log.info("Meilisearch entries deleted for document", document_id=str(document_id))
