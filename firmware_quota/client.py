"""HTTP client for the quota endpoint."""

import logging
from dataclasses import dataclass

import requests

from . import __version__
from .config import QUOTA_URL, REQUEST_TIMEOUT_S

lib_logger = logging.getLogger("firmware_quota")

CLIENT_SETUP_FAILED = "client setup failed"


@dataclass
class RequestResult:
    """Outcome of one GET: transport problem, HTTP status and body kept apart."""

    transport_error: str = ""
    http_status: int = 0
    body: str = ""
    transport_error_detail: str = ""

    @property
    def transport_ok(self) -> bool:
        return not self.transport_error


class QuotaClient:
    """Performs GET requests against the quota endpoint with TLS verification on."""

    def __init__(self, url: str = QUOTA_URL, timeout: float = REQUEST_TIMEOUT_S):
        self.url = url
        self.timeout = timeout
        self._session: requests.Session | None = None

    def _get_session(self) -> requests.Session:
        if self._session is None:
            session = requests.Session()
            session.headers["User-Agent"] = f"firmware-quota/{__version__}"
            session.headers["Accept"] = "application/json"
            self._session = session
        return self._session

    def fetch(self, header: tuple[str, str]) -> RequestResult:
        name, value = header
        try:
            resp = self._get_session().get(
                self.url,
                headers={name: value},
                timeout=self.timeout,
                verify=True,
                allow_redirects=True,
            )
        except (
            requests.exceptions.InvalidHeader,
            requests.exceptions.InvalidURL,
            requests.exceptions.MissingSchema,
            ValueError,
        ) as e:
            return RequestResult(
                transport_error=CLIENT_SETUP_FAILED,
                transport_error_detail=str(e),
            )
        except requests.exceptions.SSLError as e:
            return RequestResult(transport_error="TLS error", transport_error_detail=str(e))
        except requests.exceptions.Timeout as e:
            return RequestResult(transport_error="timed out", transport_error_detail=str(e))
        except requests.exceptions.ConnectionError as e:
            return RequestResult(
                transport_error="could not connect", transport_error_detail=str(e)
            )
        except requests.RequestException as e:
            return RequestResult(
                transport_error=type(e).__name__, transport_error_detail=str(e)
            )
        lib_logger.debug(f"GET {self.url} -> {resp.status_code} via {name}")
        return RequestResult(http_status=resp.status_code, body=resp.text)

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None
