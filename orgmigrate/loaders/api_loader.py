"""REST data service for a live org."""

import time
import logging
import requests
from typing import Any, Dict, List, Optional
from datetime import datetime
from urllib.parse import urlsplit

from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import CrudResult, DataService
from ..errors import DataServiceError, MetadataError
from ..models.schema import ObjectSchema
from ..models.script import DataMedia, Operation, QuerySpec

logger = logging.getLogger(__name__)


def flatten_record(record: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten nested relationship objects into dotted keys; drop ``attributes``."""
    flat: Dict[str, Any] = {}
    for key, value in record.items():
        if key == "attributes":
            continue
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(flatten_record(value, f"{name}."))
        else:
            flat[name] = value
    return flat


class RestDataService(DataService):
    """
    Data service talking to an org's REST API.

    Handles:
    - Bearer authentication
    - Retries with backoff on throttling and server errors
    - Client-side rate limiting
    - Query pagination through ``nextRecordsUrl``
    - Batched composite create/update/delete calls
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        batch_size: int = 200,
        rate_limit: float = 10.0,
        max_retries: int = 3,
        all_or_none: bool = False,
    ):
        """
        Initialize the REST service.

        Args:
            base_url: Versioned API root, e.g. ``https://host/services/data/v58.0``
            api_key: Access token
            batch_size: Records per composite call (the API caps this at 200)
            rate_limit: Max requests per second
            max_retries: Retries for throttled or failed requests
            all_or_none: Roll back a whole batch when one record fails
        """
        super().__init__(min(batch_size, 200))
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.rate_limit = rate_limit
        self.max_retries = max_retries
        self.all_or_none = all_or_none
        self._last_request_time = 0.0
        self._describe_cache: Dict[str, Optional[ObjectSchema]] = {}
        self._session = self._create_session()

        parts = urlsplit(self.base_url)
        self._instance_url = f"{parts.scheme}://{parts.netloc}"

    @property
    def media(self) -> DataMedia:
        return DataMedia.ORG

    def _create_session(self) -> requests.Session:
        """Create a requests session with authentication and retry logic."""
        session = requests.Session()

        if self.api_key:
            session.headers["Authorization"] = f"Bearer {self.api_key}"
        session.headers["Content-Type"] = "application/json"

        retries = Retry(
            total=self.max_retries,
            backoff_factor=2.0,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "POST", "PATCH", "DELETE"],
        )
        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        return session

    def _rate_limit_wait(self):
        """Wait to respect rate limits."""
        if self.rate_limit > 0:
            elapsed = time.time() - self._last_request_time
            wait_time = (1.0 / self.rate_limit) - elapsed
            if wait_time > 0:
                time.sleep(wait_time)
        self._last_request_time = time.time()

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        self._rate_limit_wait()
        try:
            response = self._session.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except requests.exceptions.HTTPError as e:
            error_msg = str(e)
            try:
                error_data = e.response.json()
                if isinstance(error_data, list) and error_data:
                    error_msg = error_data[0].get("message", error_msg)
                elif isinstance(error_data, dict):
                    error_msg = error_data.get("message", error_msg)
            except ValueError:
                pass
            raise DataServiceError(f"{method} {url} failed: {error_msg}", status_code=e.response.status_code) from e
        except requests.exceptions.RequestException as e:
            raise DataServiceError(f"{method} {url} failed: {e}") from e

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def describe(self, object_name: str, is_source: bool) -> Optional[ObjectSchema]:
        """Describe an object; a 404 means the object does not exist."""
        if object_name in self._describe_cache:
            return self._describe_cache[object_name]

        url = f"{self.base_url}/sobjects/{object_name}/describe"
        try:
            data = self._request("GET", url).json()
        except DataServiceError as e:
            if e.status_code == 404:
                logger.warning(f"{object_name}: not found in {'source' if is_source else 'target'} metadata")
                self._describe_cache[object_name] = None
                return None
            raise MetadataError(f"{object_name}: describe failed: {e}") from e

        schema = ObjectSchema.from_dict(data)
        self._describe_cache[object_name] = schema
        logger.debug(f"{object_name}: described {len(schema.fields)} fields")
        return schema

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def query(self, query: QuerySpec, use_bulk: bool = False) -> List[Dict[str, Any]]:
        """Run a query and follow every result page."""
        soql = query.to_soql()
        logger.debug(f"{query.object_name}: {soql}")

        records: List[Dict[str, Any]] = []
        data = self._request("GET", f"{self.base_url}/query", params={"q": soql}).json()
        while True:
            records.extend(flatten_record(r) for r in data.get("records", []))
            next_url = data.get("nextRecordsUrl")
            if data.get("done", True) or not next_url:
                break
            data = self._request("GET", f"{self._instance_url}{next_url}").json()

        return records

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def execute_crud(
        self,
        object_name: str,
        records: List[Dict[str, Any]],
        operation: Operation,
    ) -> CrudResult:
        """Write records through the composite sobjects endpoint in batches."""
        result = CrudResult(object_name=object_name, operation=operation)
        result.started_at = datetime.utcnow()

        for batch in self._batches(records):
            if operation in (Operation.DELETE, Operation.HARD_DELETE):
                responses = self._delete_batch(batch)
            else:
                responses = self._write_batch(object_name, batch, operation)

            for record, response in zip(batch, responses):
                result.total_attempted += 1
                output = dict(record)
                if response.get("success"):
                    result.total_succeeded += 1
                    if response.get("id"):
                        output["Id"] = response["id"]
                else:
                    result.total_failed += 1
                    errors = response.get("errors") or [{}]
                    result.errors.append({
                        "record_id": record.get("Id"),
                        "error": errors[0].get("message", "unknown error"),
                        "error_code": errors[0].get("statusCode"),
                    })
                result.records.append(output)

        result.completed_at = datetime.utcnow()
        logger.info(
            f"{object_name}: {operation.value} {result.total_succeeded}/{result.total_attempted} succeeded"
        )
        for error in result.errors:
            logger.error(f"{object_name}: record {error['record_id']} failed: {error['error']}")
        return result

    def _write_batch(self, object_name: str, batch: List[Dict[str, Any]], operation: Operation) -> List[Dict[str, Any]]:
        payload_records = []
        for record in batch:
            payload = {k: v for k, v in record.items() if "." not in k}
            if operation == Operation.INSERT:
                payload.pop("Id", None)
            payload["attributes"] = {"type": object_name}
            payload_records.append(payload)

        method = "POST" if operation == Operation.INSERT else "PATCH"
        response = self._request(
            method,
            f"{self.base_url}/composite/sobjects",
            json={"allOrNone": self.all_or_none, "records": payload_records},
        )
        return response.json()

    def _delete_batch(self, batch: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        ids = ",".join(str(r["Id"]) for r in batch)
        response = self._request(
            "DELETE",
            f"{self.base_url}/composite/sobjects",
            params={"ids": ids, "allOrNone": str(self.all_or_none).lower()},
        )
        return response.json()
