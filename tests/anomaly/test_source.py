"""
Tests for the Zabbix metric source.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from src.anomaly.errors import SourceUnavailableError
from src.anomaly.models import HostInfo, MetricDataPoint, ServiceConfig
from src.anomaly.source import MONITORED_KEYS, MONITORED_METRICS, ZabbixSource


def _response(result=None, error=None):
    response = MagicMock()
    body = {"jsonrpc": "2.0", "id": 1}
    if error is not None:
        body["error"] = error
    else:
        body["result"] = result
    response.json.return_value = body
    return response


class FakeZabbixApi:
    """Dispatches JSON-RPC payloads to canned results by method name."""

    def __init__(self, results):
        self.results = results
        self.calls = []

    def __call__(self, url, json=None, timeout=None):
        self.calls.append(json)
        result = self.results[json["method"]]
        if callable(result):
            result = result(json["params"])
        if isinstance(result, Exception):
            raise result
        if isinstance(result, dict) and "error" in result:
            return _response(error=result["error"])
        return _response(result)

    def methods(self):
        return [c["method"] for c in self.calls]


ITEMS = [
    {"itemid": "1", "key_": "system.cpu.util", "name": "CPU utilization",
     "lastvalue": "42.5", "value_type": "0"},
    {"itemid": "2", "key_": "proc.num", "name": "Number of processes",
     "lastvalue": "120", "value_type": "3"},
]


def _history(params):
    if params["itemids"] == ["1"]:
        return [{"clock": "1700000000", "value": "40.0"}, {"clock": "1700000060", "value": "41.0"}]
    return [{"clock": "1700000000", "value": "118"}]


class TestMonitoredMetrics:
    """Tests for the monitored item catalogue."""

    def test_catalogue(self):
        assert len(MONITORED_METRICS) == 12
        assert len(set(MONITORED_KEYS)) == 12
        assert "system.cpu.util" in MONITORED_KEYS
        assert "vfs.fs.size[/,pused]" in MONITORED_KEYS


class TestZabbixSource:
    """Tests for ZabbixSource."""

    @patch("src.anomaly.source.requests.Session")
    def test_url_and_config(self, mock_session_cls):
        config = ServiceConfig(zabbix_url="http://zbx.local/", zabbix_user="u", zabbix_password="p")
        source = ZabbixSource.from_config(config)

        assert source.url == "http://zbx.local/api_jsonrpc.php"
        assert source.user == "u"
        assert source.timeout == config.zabbix_timeout_seconds

    @patch("src.anomaly.source.requests.Session")
    def test_login_then_authenticated_calls(self, mock_session_cls):
        api = FakeZabbixApi({
            "user.login": "token-123",
            "host.get": [{"hostid": "10084", "host": "web-01", "name": "Web 01"}],
        })
        mock_session_cls.return_value.post.side_effect = api

        source = ZabbixSource("http://zbx", "Admin", "zabbix")
        hosts = source.list_enabled_hosts()

        assert hosts == [HostInfo(host_id="10084", host_name="Web 01")]
        login, host_get = api.calls
        assert login["params"] == {"username": "Admin", "password": "zabbix"}
        assert "auth" not in login
        assert host_get["auth"] == "token-123"
        assert host_get["params"]["filter"] == {"status": 0}
        assert host_get["id"] > login["id"]

    @patch("src.anomaly.source.requests.Session")
    def test_login_once(self, mock_session_cls):
        api = FakeZabbixApi({"user.login": "t", "host.get": []})
        mock_session_cls.return_value.post.side_effect = api

        source = ZabbixSource("http://zbx", "Admin", "zabbix")
        source.list_enabled_hosts()
        source.list_enabled_hosts()

        assert api.methods() == ["user.login", "host.get", "host.get"]

    @patch("src.anomaly.source.requests.Session")
    def test_get_host(self, mock_session_cls):
        api = FakeZabbixApi({
            "user.login": "t",
            "host.get": lambda params: (
                [{"hostid": "7", "host": "db", "name": "DB"}] if params["hostids"] == ["7"] else []
            ),
        })
        mock_session_cls.return_value.post.side_effect = api
        source = ZabbixSource("http://zbx", "Admin", "zabbix")

        assert source.get_host("7") == HostInfo(host_id="7", host_name="DB")
        assert source.get_host("8") is None

    @patch("src.anomaly.source.requests.Session")
    def test_get_history(self, mock_session_cls):
        api = FakeZabbixApi({"user.login": "t", "item.get": ITEMS, "history.get": _history})
        mock_session_cls.return_value.post.side_effect = api

        source = ZabbixSource("http://zbx", "Admin", "zabbix", history_limit=500)
        metrics = source.get_history("10084", ["system.cpu.util", "proc.num"], 1699990000)

        assert [m.item_key for m in metrics] == ["system.cpu.util", "proc.num"]
        cpu = metrics[0]
        assert cpu.last_value == 42.5
        assert cpu.history == [
            MetricDataPoint(timestamp=1700000000, value=40.0),
            MetricDataPoint(timestamp=1700000060, value=41.0),
        ]

        item_params = api.calls[1]["params"]
        assert item_params["search"] == {"key_": ["system.cpu.util", "proc.num"]}
        assert item_params["searchByAny"] is True

        history_params = api.calls[2]["params"]
        assert history_params["history"] == 0
        assert history_params["time_from"] == 1699990000
        assert history_params["sortorder"] == "ASC"
        assert history_params["limit"] == 500

    @patch("src.anomaly.source.requests.Session")
    def test_failed_item_is_skipped(self, mock_session_cls):
        def history(params):
            if params["itemids"] == ["1"]:
                return {"error": {"code": -32602, "message": "Invalid params.", "data": "bad"}}
            return _history(params)

        api = FakeZabbixApi({"user.login": "t", "item.get": ITEMS, "history.get": history})
        mock_session_cls.return_value.post.side_effect = api

        metrics = ZabbixSource("http://zbx", "Admin", "zabbix").get_history("1", MONITORED_KEYS, 0)

        assert [m.item_key for m in metrics] == ["proc.num"]

    @patch("src.anomaly.source.requests.Session")
    def test_non_numeric_last_value_is_skipped(self, mock_session_cls):
        items = [dict(ITEMS[0], lastvalue="n/a"), ITEMS[1]]
        api = FakeZabbixApi({"user.login": "t", "item.get": items, "history.get": _history})
        mock_session_cls.return_value.post.side_effect = api

        metrics = ZabbixSource("http://zbx", "Admin", "zabbix").get_history("1", MONITORED_KEYS, 0)

        assert [m.item_key for m in metrics] == ["proc.num"]

    @patch("src.anomaly.source.requests.Session")
    def test_api_error(self, mock_session_cls):
        api = FakeZabbixApi({
            "user.login": {"error": {"code": -32602, "message": "Invalid params.",
                                     "data": "Incorrect user name or password"}},
        })
        mock_session_cls.return_value.post.side_effect = api

        with pytest.raises(SourceUnavailableError, match="Incorrect user name"):
            ZabbixSource("http://zbx", "Admin", "wrong").list_enabled_hosts()

    @patch("src.anomaly.source.requests.Session")
    def test_expired_session_logs_in_again(self, mock_session_cls):
        """A terminated session is renewed once and the call retried."""
        replies = iter([
            {"error": {"code": -32602, "message": "Invalid params.",
                       "data": "Session terminated, re-login, please."}},
            [{"hostid": "10084", "host": "web-01", "name": "Web 01"}],
        ])
        tokens = iter(["token-1", "token-2"])
        api = FakeZabbixApi({
            "user.login": lambda params: next(tokens),
            "host.get": lambda params: next(replies),
        })
        mock_session_cls.return_value.post.side_effect = api

        hosts = ZabbixSource("http://zbx", "Admin", "zabbix").list_enabled_hosts()

        assert hosts == [HostInfo(host_id="10084", host_name="Web 01")]
        assert api.methods() == ["user.login", "host.get", "user.login", "host.get"]
        assert api.calls[1]["auth"] == "token-1"
        assert api.calls[3]["auth"] == "token-2"

    @patch("src.anomaly.source.requests.Session")
    def test_session_renewed_only_once(self, mock_session_cls):
        expired = {"error": {"code": -32602, "message": "Invalid params.",
                             "data": "Not authorised."}}
        api = FakeZabbixApi({"user.login": "t", "host.get": expired})
        mock_session_cls.return_value.post.side_effect = api

        with pytest.raises(SourceUnavailableError, match="Not authorised"):
            ZabbixSource("http://zbx", "Admin", "zabbix").list_enabled_hosts()

        assert api.methods() == ["user.login", "host.get", "user.login", "host.get"]

    @patch("src.anomaly.source.requests.Session")
    def test_transport_error(self, mock_session_cls):
        mock_session_cls.return_value.post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(SourceUnavailableError, match="user.login"):
            ZabbixSource("http://zbx", "Admin", "zabbix").get_host("1")

    @patch("src.anomaly.source.requests.Session")
    def test_close_logs_out(self, mock_session_cls):
        api = FakeZabbixApi({"user.login": "t", "host.get": [], "user.logout": True})
        mock_session = mock_session_cls.return_value
        mock_session.post.side_effect = api

        source = ZabbixSource("http://zbx", "Admin", "zabbix")
        source.list_enabled_hosts()
        source.close()

        assert api.calls[-1]["method"] == "user.logout"
        assert api.calls[-1]["params"] == []
        mock_session.close.assert_called_once()

    @patch("src.anomaly.source.requests.Session")
    def test_close_without_login(self, mock_session_cls):
        mock_session = mock_session_cls.return_value

        ZabbixSource("http://zbx", "Admin", "zabbix").close()

        mock_session.post.assert_not_called()
        mock_session.close.assert_called_once()
