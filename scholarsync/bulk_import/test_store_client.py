"""
HTTP record store tests. The session is mocked; no network.
"""

from unittest.mock import MagicMock

import pytest
import requests

from import_config import CHECK_DUPLICATES_PATH, MERGE_IMPORT_PATH, ImportSettings
from import_errors import StoreRejected, StoreUnavailable
from store_client import HttpRecordStore


def make_response(status=200, body=None, text="", json_error=False):
    response = MagicMock()
    response.status_code = status
    response.text = text
    if json_error:
        response.json.side_effect = ValueError("No JSON object could be decoded")
    else:
        response.json.return_value = body
    return response


def make_store(response=None, error=None, **settings):
    session = MagicMock()
    session.headers = {}
    if error is not None:
        session.post.side_effect = error
    else:
        session.post.return_value = response
    store = HttpRecordStore(ImportSettings(base_url="https://store.example/api/", **settings), session=session)
    return store, session


class TestRequests:
    def test_posts_json_to_endpoint(self):
        store, session = make_store(make_response(body={"stats": {}}))
        store.merge_import({"upload_id": "u1"})
        args, kwargs = session.post.call_args
        assert args[0] == f"https://store.example/api{MERGE_IMPORT_PATH}"
        assert kwargs["json"] == {"upload_id": "u1"}
        assert kwargs["timeout"] == store.timeout

    def test_bearer_header_only_with_key(self):
        _, session = make_store(make_response(body={}))
        assert "Authorization" not in session.headers
        _, session = make_store(make_response(body={}), api_key="secret")
        assert session.headers["Authorization"] == "Bearer secret"

    def test_check_duplicates_sends_upload_id(self):
        store, session = make_store(make_response(body=[]))
        assert store.check_duplicates([{"row_index": 3}], upload_id="u1") == []
        args, kwargs = session.post.call_args
        assert args[0].endswith(CHECK_DUPLICATES_PATH)
        assert kwargs["json"] == {"upload_id": "u1", "students": [{"row_index": 3}]}

    def test_check_duplicates_accepts_wrapped_results(self):
        store, _ = make_store(make_response(body={"results": [{"row_index": 3, "matches": []}]}))
        assert store.check_duplicates([]) == [{"row_index": 3, "matches": []}]


class TestFailures:
    @pytest.mark.parametrize("error", [
        requests.Timeout("read timed out"),
        requests.ConnectionError("connection refused"),
    ])
    def test_transport_errors_are_unavailable(self, error):
        store, _ = make_store(error=error)
        with pytest.raises(StoreUnavailable):
            store.resolve_import({})

    def test_server_error_is_unavailable(self):
        store, _ = make_store(make_response(status=503, text="maintenance"))
        with pytest.raises(StoreUnavailable) as exc_info:
            store.merge_import({})
        assert exc_info.value.status_code == 503
        assert "maintenance" in exc_info.value.details

    def test_client_error_is_rejected(self):
        store, _ = make_store(make_response(status=422, text="bad row"))
        with pytest.raises(StoreRejected) as exc_info:
            store.merge_import({})
        assert exc_info.value.status_code == 422

    def test_non_json_body_is_rejected(self):
        store, _ = make_store(make_response(json_error=True, text="<html>"))
        with pytest.raises(StoreRejected):
            store.resolve_import({})

    def test_wrong_shape_is_rejected(self):
        store, _ = make_store(make_response(body=["not", "a", "dict"]))
        with pytest.raises(StoreRejected):
            store.resolve_import({})

    def test_halt_message_names_the_reason(self):
        store, _ = make_store(make_response(status=500))
        with pytest.raises(StoreUnavailable) as exc_info:
            store.merge_import({})
        assert "HTTP 500" in str(exc_info.value)
