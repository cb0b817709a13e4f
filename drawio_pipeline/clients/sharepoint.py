import logging
import mimetypes
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import quote

import msal
import requests

from ..config import SharePointSettings

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPE = ["https://graph.microsoft.com/.default"]
CONTENT_TYPES = {".csv": "text/csv"}

# Ordered destinations relative to the drive root, each tried once.
# The drive root normally *is* the "Documents" library; the prefixed shapes
# cover sites where the library is exposed as a folder of a parent drive.
UPLOAD_PATH_SHAPES = (
    "{folder}/{filename}",
    "Documents/{folder}/{filename}",
    "Shared Documents/{folder}/{filename}",
    "{filename}",
)


class SharePointError(Exception):
    """Base exception for SharePoint / MS Graph failures"""

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        self.status = status
        self.code = code
        super().__init__(message)


class SharePointAuthError(SharePointError):
    """Raised when the client-credentials token cannot be acquired"""
    pass


class SharePointUploadError(SharePointError):
    """Raised when every upload destination failed"""

    @classmethod
    def from_response(cls, response: requests.Response, context: str) -> "SharePointUploadError":
        code, message = _graph_error(response)
        return cls(f"{context}: HTTP {response.status_code} {code or ''} {message or ''}".strip(), response.status_code, code)


def _graph_error(response: requests.Response):
    """Extract (code, message) from a Graph error body: {"error": {"code": ..., "message": ...}}"""
    try:
        body = response.json()
    except ValueError:
        return None, (response.text or "")[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("code"), error.get("message")
    return None, None


def _json(response: requests.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


@dataclass
class UploadResult:
    item_id: str
    web_url: Optional[str]
    remote_path: str
    attempts: int


class _AttemptBudget:
    """One bounded pool of HTTP attempts shared by every call of an operation"""

    def __init__(self, total: int):
        self.total = total
        self.used = 0

    @property
    def remaining(self) -> int:
        return self.total - self.used

    def take(self) -> bool:
        if self.used >= self.total:
            return False
        self.used += 1
        return True


class SharePointClient:
    # Token refresh buffer - refresh 5 minutes before expiry
    TOKEN_REFRESH_BUFFER_SECONDS = 300
    RETRYABLE_STATUS = (429, 502, 503, 504)
    MAX_BACKOFF_SECONDS = 60

    def __init__(
        self,
        settings: SharePointSettings,
        session: Optional[requests.Session] = None,
        msal_app: Optional[msal.ConfidentialClientApplication] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cfg = settings.require()
        self.session = session or requests.Session()
        self.access_token: Optional[str] = None
        self.token_expires_at: Optional[datetime] = None
        self._msal_app = msal_app
        self._sleep = sleep

    # --- Authentication ---

    def _get_msal_app(self) -> msal.ConfidentialClientApplication:
        if self._msal_app is None:
            self._msal_app = msal.ConfidentialClientApplication(
                self.cfg.client_id,
                authority=f"https://login.microsoftonline.com/{self.cfg.tenant_id}",
                client_credential=self.cfg.client_secret,
            )
        return self._msal_app

    def _authenticate(self):
        """Acquires token via Client Credentials Flow"""
        try:
            result = self._get_msal_app().acquire_token_for_client(scopes=GRAPH_SCOPE)
        except (ValueError, requests.RequestException) as e:
            raise SharePointAuthError(f"Token request failed: {e}") from e

        if "access_token" in result:
            self.access_token = result["access_token"]
            expires_in = int(result.get("expires_in", 3600))
            self.token_expires_at = datetime.utcnow() + timedelta(seconds=expires_in)
            logger.info(f"OAuth token obtained, expires at {self.token_expires_at.isoformat()}")
        else:
            error = result.get("error", "unknown_error")
            description = result.get("error_description", "Unknown Error")
            logger.error(f"Error acquiring token: {error}: {description}")
            raise SharePointAuthError(f"Failed to authenticate with Graph API: {error}: {description}", code=error)

    def _ensure_valid_token(self):
        """Check and refresh token if expired or about to expire"""
        if self.access_token is None or self.token_expires_at is None:
            self._authenticate()
            return
        refresh_threshold = datetime.utcnow() + timedelta(seconds=self.TOKEN_REFRESH_BUFFER_SECONDS)
        if self.token_expires_at <= refresh_threshold:
            logger.info("Token expiring soon, refreshing...")
            self._authenticate()

    def get_headers(self) -> Dict[str, str]:
        self._ensure_valid_token()
        return {"Authorization": f"Bearer {self.access_token}", "Accept": "application/json"}

    # --- URL building ---

    def _drive_url(self) -> str:
        site_url = f"{GRAPH_BASE_URL}/sites/{self.cfg.site_id}"
        if self.cfg.drive_id:
            return f"{site_url}/drives/{self.cfg.drive_id}"
        return f"{site_url}/drive"

    def _item_url(self, remote_path: str) -> str:
        """Address a drive item by path: .../root:/{path}"""
        return f"{self._drive_url()}/root:/{quote(remote_path.strip('/'), safe='/')}"

    def build_upload_url(self, remote_path: str) -> str:
        return f"{self._item_url(remote_path)}:/content"

    # --- HTTP ---

    def _backoff(self, attempt: int, retry_after: Optional[str] = None) -> float:
        delay = (2 ** attempt) + random.uniform(0, 0.5)
        if retry_after:
            try:
                delay = max(delay, float(retry_after))
            except ValueError:
                pass
        return min(delay, self.MAX_BACKOFF_SECONDS)

    def _request_with_retry(
        self,
        method: str,
        url: str,
        budget: _AttemptBudget,
        extra_headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ) -> requests.Response:
        """
        Execute a request, retrying throttling (429, honouring Retry-After),
        transient gateway errors (502/503/504), timeouts and connection errors
        with exponential backoff + jitter. Every attempt is drawn from ``budget``.
        """
        attempt = 0
        last_error: Optional[Exception] = None
        timeout = (self.cfg.connect_timeout_seconds, self.cfg.read_timeout_seconds)

        while budget.take():
            headers = self.get_headers()
            if extra_headers:
                headers.update(extra_headers)
            try:
                response = self.session.request(method, url, headers=headers, timeout=timeout, **kwargs)
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                last_error = e
                if budget.remaining <= 0:
                    break
                wait_time = self._backoff(attempt)
                logger.warning(f"{method} {url} failed: {e}, retrying in {wait_time:.1f}s...")
                self._sleep(wait_time)
                attempt += 1
                continue

            if response.status_code == 401 and attempt == 0 and budget.remaining > 0:
                logger.warning("Graph API returned 401, refreshing token and retrying")
                self.access_token = None
                attempt += 1
                continue

            if response.status_code in self.RETRYABLE_STATUS and budget.remaining > 0:
                wait_time = self._backoff(attempt, response.headers.get("Retry-After"))
                logger.warning(f"{method} {url} returned {response.status_code}, retrying in {wait_time:.1f}s...")
                self._sleep(wait_time)
                attempt += 1
                continue

            return response

        if last_error is not None:
            raise SharePointUploadError(f"{method} {url} failed after {budget.used} attempts: {last_error}") from last_error
        raise SharePointUploadError(f"Attempt budget of {budget.total} exhausted before {method} {url}")

    # --- Operations ---

    def verify_connection(self) -> Dict[str, Any]:
        """Look up the configured site; used as a dry run before uploading."""
        budget = _AttemptBudget(3)
        response = self._request_with_retry("GET", f"{GRAPH_BASE_URL}/sites/{self.cfg.site_id}", budget)
        data = _json(response)
        if not response.ok or not data.get("id"):
            raise SharePointUploadError.from_response(response, "Failed to access SharePoint site")
        logger.info(f"Connected to SharePoint site: {data.get('displayName', data['id'])}")
        return data

    def ensure_folder(self, folder: str, budget: Optional[_AttemptBudget] = None) -> None:
        """Create every missing segment of ``folder`` below the drive root."""
        budget = budget or _AttemptBudget(self.cfg.max_attempts)
        segments = [s for s in folder.strip("/").split("/") if s]
        parent = ""

        for segment in segments:
            current = f"{parent}/{segment}" if parent else segment
            response = self._request_with_retry("GET", self._item_url(current), budget)

            if response.status_code == 404:
                logger.info(f"Folder '{current}' does not exist, creating it")
                children_url = f"{self._item_url(parent)}:/children" if parent else f"{self._drive_url()}/root/children"
                body = {"name": segment, "folder": {}, "@microsoft.graph.conflictBehavior": "fail"}
                created = self._request_with_retry("POST", children_url, budget, json=body)
                # 409: created concurrently by someone else, which is fine
                if created.status_code not in (200, 201, 409):
                    raise SharePointUploadError.from_response(created, f"Failed to create folder '{current}'")
            elif not response.ok:
                raise SharePointUploadError.from_response(response, f"Failed to look up folder '{current}'")

            parent = current

    def _candidate_paths(self, folder: str, filename: str) -> List[str]:
        folder = folder.strip("/")
        shapes = UPLOAD_PATH_SHAPES if folder else ("{filename}",)
        candidates: List[str] = []
        for shape in shapes:
            remote = shape.format(folder=folder, filename=filename)
            if remote not in candidates:
                candidates.append(remote)
        return candidates

    def upload_file(
        self,
        local_path: Union[str, Path],
        folder: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> UploadResult:
        """
        Upload ``local_path`` into ``folder`` (created when missing).

        Each path shape in UPLOAD_PATH_SHAPES is tried once, in order; a shape
        succeeds when Graph answers with a drive item carrying an ``id``.

        Raises:
            FileNotFoundError: local file missing
            SharePointAuthError: token could not be acquired
            SharePointUploadError: every destination failed or the attempt budget ran out
        """
        local_path = Path(local_path)
        folder = self.cfg.folder if folder is None else folder
        filename = filename or self.cfg.output_filename

        content = local_path.read_bytes()
        content_type = CONTENT_TYPES.get(Path(filename).suffix.lower()) or mimetypes.guess_type(filename)[0] or "application/octet-stream"
        logger.info(f"Uploading {local_path} ({len(content)} bytes) to '{folder}/{filename}'")

        budget = _AttemptBudget(self.cfg.max_attempts)

        if folder.strip("/"):
            try:
                self.ensure_folder(folder, budget)
            except SharePointAuthError:
                raise
            except SharePointError as e:
                logger.warning(f"Could not ensure folder '{folder}': {e}. Will try upload anyway.")

        last_error: Optional[SharePointError] = None
        for remote_path in self._candidate_paths(folder, filename):
            if budget.remaining <= 0:
                break
            url = self.build_upload_url(remote_path)
            logger.info(f"Trying upload path: {remote_path}")
            try:
                response = self._request_with_retry(
                    "PUT", url, budget, extra_headers={"Content-Type": content_type}, data=content
                )
            except SharePointAuthError:
                raise
            except SharePointError as e:
                last_error = e
                logger.warning(f"Upload to '{remote_path}' failed: {e}")
                continue

            data = _json(response)
            if response.ok and data.get("id"):
                web_url = data.get("webUrl")
                logger.info(f"Successfully uploaded file to SharePoint: {web_url or remote_path}")
                return UploadResult(item_id=data["id"], web_url=web_url, remote_path=remote_path, attempts=budget.used)

            last_error = SharePointUploadError.from_response(response, f"Upload to '{remote_path}' failed")
            logger.warning(str(last_error))

        detail = f" Last error: {last_error}" if last_error else ""
        raise SharePointUploadError(
            f"All upload paths failed after {budget.used} attempts.{detail}",
            status=getattr(last_error, "status", None),
            code=getattr(last_error, "code", None),
        )
