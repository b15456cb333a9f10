"""HTTP client for the ledger API.

Transport failures and 5xx responses are retried with exponential backoff;
4xx responses are raised immediately as ``ApiError``.
"""

import logging
from typing import Any, Optional

import httpx
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from config import get_settings

logger = logging.getLogger(__name__)


class ApiError(Exception):
    def __init__(self, status: int, message: str, code: Optional[str] = None) -> None:
        self.status = status
        self.message = message
        self.code = code
        super().__init__(f"{status}: {message}")


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, ApiError) and exc.status >= 500


def _error_from(response: httpx.Response) -> ApiError:
    try:
        body = response.json()
    except ValueError:
        return ApiError(response.status_code, response.text or response.reason_phrase)
    if isinstance(body, dict):
        detail = body.get("detail", response.reason_phrase)
        return ApiError(response.status_code, str(detail), body.get("error"))
    return ApiError(response.status_code, str(body))


class LedgerClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        http: Optional[httpx.Client] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        wait=None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.api_url).rstrip("/")
        self.max_retries = settings.client_max_retries if max_retries is None else max_retries
        self._wait = wait or wait_exponential(multiplier=0.5, min=0.5, max=8)
        self._owns_http = http is None
        self._http = http or httpx.Client(
            timeout=timeout if timeout is not None else settings.client_timeout_secs
        )

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "LedgerClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        response = self._http.request(method, f"{self.base_url}{path}", **kwargs)
        if response.status_code >= 400:
            raise _error_from(response)
        return response

    def request(self, method: str, path: str, **kwargs) -> httpx.Response:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception(_is_retryable),
            before_sleep=lambda state: logger.warning(
                f"api_retry: method={method} path={path} "
                f"attempt={state.attempt_number} error={state.outcome.exception()}"
            ),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                return self._send(method, path, **kwargs)

    def _json(self, method: str, path: str, **kwargs) -> Any:
        response = self.request(method, path, **kwargs)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def health(self) -> dict:
        return self._json("GET", "/health")

    def list_accounts(self) -> list[dict]:
        return self._json("GET", "/accounts")

    def create_account(self, name: str, currency: str, initial_balance: float = 0) -> dict:
        payload = {"name": name, "currency": currency, "initial_balance": str(initial_balance)}
        return self._json("POST", "/accounts", json=payload)

    def delete_account(self, account_id: int) -> None:
        self._json("DELETE", f"/accounts/{account_id}")

    def rename_currency(self, old_code: str, new_code: str) -> int:
        body = self._json(
            "POST", "/accounts/rename-currency", json={"old_code": old_code, "new_code": new_code}
        )
        return body["changed"]

    def list_transactions(self, **filters) -> list[dict]:
        params = {key: value for key, value in filters.items() if value is not None}
        return self._json("GET", "/transactions", params=params)

    def create_transaction(self, payload: dict) -> dict:
        return self._json("POST", "/transactions", json=payload)

    def update_transaction(self, transaction_id: int, changes: dict) -> dict:
        return self._json("PUT", f"/transactions/{transaction_id}", json=changes)

    def delete_transaction(self, transaction_id: int) -> list[int]:
        return self._json("DELETE", f"/transactions/{transaction_id}")["deleted"]

    def check_duplicates(
        self, candidates: list[dict], date_format: Optional[str] = None
    ) -> list[dict]:
        payload = {"candidates": candidates, "date_format": date_format}
        return self._json("POST", "/transactions/import-check", json=payload)["duplicates"]

    def import_transactions(
        self,
        csv_data: str,
        account_id: int,
        skip_duplicates: bool = False,
        date_format: Optional[str] = None,
    ) -> dict:
        payload = {
            "csv_data": csv_data,
            "account_id": account_id,
            "skip_duplicates": skip_duplicates,
            "date_format": date_format,
        }
        return self._json("POST", "/transactions/import", json=payload)

    def export_transactions(self, **options) -> str:
        return self.request("POST", "/transactions/export", json=options).text

    def list_manifests(self) -> list[dict]:
        return self._json("GET", "/export-log")

    def record_manifest(
        self, filename: str, count: int, content: str, transaction_ids: Optional[list[int]] = None
    ) -> dict:
        payload = {
            "filename": filename,
            "count": count,
            "content": content,
            "transaction_ids": transaction_ids,
        }
        return self._json("POST", "/export-log", json=payload)

    def delete_manifest(self, manifest_id: int) -> int:
        return self._json("DELETE", f"/export-log/{manifest_id}")["cleared"]

    def get_settings(self) -> dict[str, str]:
        return self._json("GET", "/settings")

    def set_setting(self, key: str, value: str) -> str:
        return self._json("PUT", f"/settings/{key}", json={"value": value})["value"]
