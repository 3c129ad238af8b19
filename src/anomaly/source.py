"""
Metric sources that supply hosts and item history to the engine.

All detection methods only depend on the MetricSource interface:
- list_enabled_hosts(): hosts to analyze in a fleet run
- get_host(): host lookup by id
- get_history(): recent history of the monitored items of one host
"""

import threading
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any, Optional

import requests
import structlog
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import SourceUnavailableError
from .models import HostInfo, ItemHistory, MetricDataPoint, ServiceConfig

logger = structlog.get_logger(__name__)

# Item keys analyzed on every host
MONITORED_METRICS = [
    # CPU
    {"key": "system.cpu.util", "name": "CPU Utilization", "unit": "%"},
    {"key": "system.cpu.load[all,avg1]", "name": "CPU Load (1m)", "unit": ""},
    {"key": "system.cpu.load[all,avg5]", "name": "CPU Load (5m)", "unit": ""},
    # Memory
    {"key": "vm.memory.util", "name": "Memory Utilization", "unit": "%"},
    {"key": "vm.memory.size[available]", "name": "Available Memory", "unit": "bytes"},
    # Disk
    {"key": "vfs.fs.size[/,pused]", "name": "Disk Usage /", "unit": "%"},
    {"key": "vfs.dev.read.rate", "name": "Disk Read Rate", "unit": "ops/s"},
    {"key": "vfs.dev.write.rate", "name": "Disk Write Rate", "unit": "ops/s"},
    # Network
    {"key": "net.if.in", "name": "Network In", "unit": "bps"},
    {"key": "net.if.out", "name": "Network Out", "unit": "bps"},
    # Process
    {"key": "proc.num", "name": "Process Count", "unit": ""},
    {"key": "proc.num[,,run]", "name": "Running Processes", "unit": ""},
]

MONITORED_KEYS = [m["key"] for m in MONITORED_METRICS]

# Fragments of the API error text Zabbix returns for an expired or unknown session
SESSION_ERROR_MARKERS = ("re-login", "session terminated", "not authorised", "not authorized")


class SessionExpiredError(SourceUnavailableError):
    """The API rejected the auth token; a fresh login may succeed"""


def _is_session_error(error: dict) -> bool:
    text = f"{error.get('message', '')} {error.get('data', '')}".lower()
    return any(marker in text for marker in SESSION_ERROR_MARKERS)


class MetricSource(ABC):
    """Abstract base class for monitoring backends"""

    @abstractmethod
    def list_enabled_hosts(self) -> list[HostInfo]:
        pass

    @abstractmethod
    def get_host(self, host_id: str) -> Optional[HostInfo]:
        pass

    @abstractmethod
    def get_history(
        self, host_id: str, item_keys: Sequence[str], time_from: int
    ) -> list[ItemHistory]:
        """Fetch recent history for the given item keys of one host

        Args:
            host_id: Host identifier
            item_keys: Keys to look up
            time_from: Start of the window in epoch seconds

        Returns:
            One ItemHistory per item found. Items whose history cannot be
            fetched are left out rather than failing the whole host.
        """
        pass

    def close(self) -> None:
        """Release connections"""


class ZabbixSource(MetricSource):
    """Zabbix JSON-RPC API client"""

    _NO_AUTH_METHODS = {"apiinfo.version", "user.login"}

    def __init__(
        self,
        url: str,
        user: str,
        password: str,
        timeout: float = 10.0,
        history_limit: int = 1000,
        retries: int = 2,
    ):
        self.url = url.rstrip("/") + "/api_jsonrpc.php"
        self.user = user
        self.password = password
        self.timeout = timeout
        self.history_limit = history_limit

        retry = Retry(
            total=retries,
            backoff_factor=0.5,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=("POST",),
        )
        self.session = requests.Session()
        self.session.mount("http://", HTTPAdapter(max_retries=retry))
        self.session.mount("https://", HTTPAdapter(max_retries=retry))
        self.session.headers.update({"Content-Type": "application/json-rpc"})

        self._auth_token: Optional[str] = None
        self._request_id = 0
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: ServiceConfig) -> "ZabbixSource":
        return cls(
            url=config.zabbix_url,
            user=config.zabbix_user,
            password=config.zabbix_password,
            timeout=config.zabbix_timeout_seconds,
            history_limit=config.history_limit,
        )

    def request(self, method: str, params: Any = None) -> Any:
        """Call a JSON-RPC method and return its result

        An expired or terminated session is renewed with one fresh login
        and the call is retried once.

        Raises:
            SourceUnavailableError: On transport errors or API error responses
        """
        try:
            return self._call(method, params)
        except SessionExpiredError as e:
            if method in self._NO_AUTH_METHODS:
                raise
            logger.warning("Zabbix session expired, logging in again", method=method, error=str(e))
            with self._lock:
                self._auth_token = None
            self.login()
            return self._call(method, params)

    def _call(self, method: str, params: Any = None) -> Any:
        with self._lock:
            self._request_id += 1
            payload = {
                "jsonrpc": "2.0",
                "method": method,
                "params": params if params is not None else {},
                "id": self._request_id,
            }
            if method not in self._NO_AUTH_METHODS and self._auth_token:
                payload["auth"] = self._auth_token

        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            raise SourceUnavailableError(f"Zabbix request {method} failed: {e}") from e

        if "error" in body:
            error = body["error"]
            detail = error.get("data") or error.get("message")
            if _is_session_error(error):
                raise SessionExpiredError(f"Zabbix {method} error: {detail}")
            raise SourceUnavailableError(f"Zabbix {method} error: {detail}")
        return body.get("result")

    def login(self) -> None:
        token = self.request("user.login", {"username": self.user, "password": self.password})
        with self._lock:
            self._auth_token = token
        logger.debug("Logged in to Zabbix", url=self.url)

    def _ensure_login(self) -> None:
        if self._auth_token is None:
            self.login()

    def list_enabled_hosts(self) -> list[HostInfo]:
        self._ensure_login()
        hosts = self.request(
            "host.get",
            {"output": ["hostid", "host", "name"], "filter": {"status": 0}},
        )
        return [HostInfo(host_id=h["hostid"], host_name=h["name"]) for h in hosts or []]

    def get_host(self, host_id: str) -> Optional[HostInfo]:
        self._ensure_login()
        hosts = self.request(
            "host.get",
            {"output": ["hostid", "host", "name"], "hostids": [host_id]},
        )
        if not hosts:
            return None
        return HostInfo(host_id=hosts[0]["hostid"], host_name=hosts[0]["name"])

    def get_history(
        self, host_id: str, item_keys: Sequence[str], time_from: int
    ) -> list[ItemHistory]:
        self._ensure_login()
        items = self.request(
            "item.get",
            {
                "output": ["itemid", "key_", "name", "lastvalue", "value_type"],
                "hostids": [host_id],
                "search": {"key_": list(item_keys)},
                "searchByAny": True,
            },
        )

        metrics = []
        for item in items or []:
            metric = self._fetch_item_history(host_id, item, time_from)
            if metric is not None:
                metrics.append(metric)

        logger.debug(
            "Collected item history",
            host_id=host_id,
            items=len(items or []),
            collected=len(metrics),
        )
        return metrics

    def _fetch_item_history(
        self, host_id: str, item: dict, time_from: int
    ) -> Optional[ItemHistory]:
        try:
            last_value = float(item["lastvalue"])
            history = self.request(
                "history.get",
                {
                    "output": ["clock", "value"],
                    "itemids": [item["itemid"]],
                    "history": int(item["value_type"]),
                    "time_from": time_from,
                    "sortfield": "clock",
                    "sortorder": "ASC",
                    "limit": self.history_limit,
                },
            )
            points = [
                MetricDataPoint(timestamp=int(h["clock"]), value=float(h["value"]))
                for h in history or []
            ]
        except (SourceUnavailableError, KeyError, ValueError) as e:
            logger.error(
                "Failed to get item history",
                host_id=host_id,
                item_id=item.get("itemid"),
                error=str(e),
            )
            return None

        return ItemHistory(
            item_key=item["key_"],
            item_name=item["name"],
            last_value=last_value,
            history=points,
        )

    def close(self) -> None:
        if self._auth_token is not None:
            try:
                self._call("user.logout", [])
            except SourceUnavailableError as e:
                logger.warning("Zabbix logout failed", error=str(e))
            self._auth_token = None
        self.session.close()
