"""Tests for the HTTP store client, with a mocked requests session."""
import json
from unittest.mock import MagicMock

import pytest
import requests

from tsingest.errors import StoreError
from tsingest.serializers import Point
from tsingest.store import OpenTsdbStore, format_tag_filter, parse_identifier, parse_push_response


def response(status_code, body=""):
    mock = MagicMock()
    mock.status_code = status_code
    mock.text = body if isinstance(body, str) else json.dumps(body)
    return mock


@pytest.fixture
def http():
    return MagicMock(spec=requests.Session, headers={})


@pytest.fixture
def client(config, http):
    return OpenTsdbStore(config, session=http)


POINTS = [Point("temp", 1000 + i, float(i), {"eq": "eq1"}) for i in range(3)]


class TestPushResponse:
    """Per-point outcome parsing."""

    @pytest.mark.parametrize("status", [200, 204])
    def test_success_without_details(self, status):
        result = parse_push_response(status, "", 5)

        assert (result.succeeded, result.failed, result.errors) == (5, 0, [])

    def test_success_with_details(self):
        result = parse_push_response(200, json.dumps({"success": 4, "failed": 0, "errors": []}), 4)

        assert result.succeeded == 4

    def test_partial_failure(self):
        body = {
            "success": 1,
            "failed": 2,
            "errors": [
                {"datapoint": {"metric": "temp", "timestamp": 1000}, "error": "Unable to parse value"},
                {"error": "Unknown metric"},
            ],
        }

        result = parse_push_response(400, json.dumps(body), 3)

        assert (result.succeeded, result.failed) == (1, 2)
        assert result.errors == ["1000: Unable to parse value", "Unknown metric"]

    def test_malformed_400(self):
        with pytest.raises(StoreError, match="Malformed store response") as excinfo:
            parse_push_response(400, "<html>bad request</html>", 3)
        assert excinfo.value.status_code == 400

    def test_server_error(self):
        with pytest.raises(StoreError, match="HTTP 500") as excinfo:
            parse_push_response(500, "internal error", 3)
        assert excinfo.value.status_code == 500


class TestIdentifierParsing:

    def test_first_tsuid(self):
        body = json.dumps([{"metric": "temp", "tsuids": ["000001000001000001"]}])
        assert parse_identifier(body) == "000001000001000001"

    @pytest.mark.parametrize("body", ["[]", "not json", json.dumps([{"tsuids": []}]), "42"])
    def test_not_indexed(self, body):
        assert parse_identifier(body) is None

    def test_tag_filter(self):
        assert format_tag_filter("temp", {"eq": "eq1", "site": "s"}) == "{eq=eq1,site=s}"
        assert format_tag_filter("temp", {}) == "{metric=temp}"


class TestOpenTsdbStore:
    """Requests sent to the API."""

    def test_push(self, client, http):
        http.put.return_value = response(204)

        result = client.push(POINTS)

        assert result.succeeded == 3
        url = http.put.call_args.args[0]
        kwargs = http.put.call_args.kwargs
        assert url == "http://tsdb.test/api/put?details=true&sync=true&sync_timeout=30000"
        assert kwargs["timeout"] == 30.0
        sent = json.loads(kwargs["data"])
        assert sent[0] == {"metric": "temp", "timestamp": 1000, "value": 0.0, "tags": {"eq": "eq1"}}
        assert len(sent) == 3
        assert http.headers["Content-Type"] == "application/json"

    def test_push_timeout(self, client, http):
        http.put.side_effect = requests.Timeout("read timed out")

        with pytest.raises(StoreError, match="timed out after 30.0s"):
            client.push(POINTS)

    def test_push_connection_error(self, client, http):
        http.put.side_effect = requests.ConnectionError("refused")

        with pytest.raises(StoreError, match="Store push failed"):
            client.push(POINTS)

    def test_resolve(self, client, http):
        http.get.return_value = response(200, [{"tsuids": ["00AB"]}])

        tsuid = client.resolve_identifier("temp", {"eq": "eq1"}, 1000)

        assert tsuid == "00AB"
        url = http.get.call_args.args[0]
        params = http.get.call_args.kwargs["params"]
        assert url == "http://tsdb.test/api/query"
        assert params == {
            "start": "1000",
            "end": "1001",
            "m": "sum:temp{eq=eq1}",
            "show_tsuids": "true",
            "ms": "true",
        }

    def test_resolve_not_indexed(self, client, http):
        http.get.return_value = response(404, {"error": {"message": "No such name"}})

        assert client.resolve_identifier("temp", {"metric": "temp"}, 0) is None

    def test_resolve_server_error(self, client, http):
        http.get.return_value = response(503, "unavailable")

        with pytest.raises(StoreError) as excinfo:
            client.resolve_identifier("temp", {}, 0)
        assert excinfo.value.status_code == 503

    def test_close(self, client, http):
        client.close()
        http.close.assert_called_once()
