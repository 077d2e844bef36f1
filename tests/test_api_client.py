import pytest
import requests

from core import SourceQuery, SourceUnavailable
from infrastructure.task_source import ApiClient, RateLimiter, RemoteTaskSource
from infrastructure.task_source.api_client import ApiClientError, ApiPermissionError, ApiRateLimitError


class DummyResponse:
    def __init__(self, status_code=200, body=None, headers=None, text=""):
        self.status_code = status_code
        self._body = body if body is not None else {"data": []}
        self.headers = headers or {}
        self.text = text

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class DummySession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "params": params, "json": json, "headers": headers})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class DummyLimiter:
    def __init__(self):
        self.updates = []

    def acquire(self):
        pass

    def update(self, headers, status_code=None):
        self.updates.append(status_code)


def _client(responses, token="tok-123", max_attempts=3):
    session = DummySession(responses)
    sleeps = []
    client = ApiClient(
        "https://tasks.example.test/api/1.0/",
        session,
        lambda: token,
        DummyLimiter(),
        max_attempts=max_attempts,
        sleep=sleeps.append,
    )
    return client, session, sleeps


def test_get_sends_bearer_and_params():
    client, session, _ = _client([DummyResponse(body={"data": {"gid": "1"}})])

    body = client.get("tasks/1", {"opt_fields": "name"})

    assert body == {"data": {"gid": "1"}}
    call = session.calls[0]
    assert call["url"] == "https://tasks.example.test/api/1.0/tasks/1"
    assert call["headers"]["Authorization"] == "Bearer tok-123"
    assert call["params"] == {"opt_fields": "name"}


def test_server_error_is_retried_with_backoff():
    client, session, sleeps = _client([DummyResponse(503), DummyResponse(body={"data": []})])

    assert client.get("tasks") == {"data": []}
    assert len(session.calls) == 2
    assert len(sleeps) == 1 and 1.0 <= sleeps[0] <= 2.0


def test_network_errors_exhaust_attempts():
    client, session, sleeps = _client([requests.ConnectionError("down")] * 3)

    with pytest.raises(ApiClientError) as excinfo:
        client.get("tasks")

    assert isinstance(excinfo.value, SourceUnavailable)
    assert len(session.calls) == 3
    assert len(sleeps) == 2


@pytest.mark.parametrize("status", [401, 403])
def test_auth_failures_are_not_retried(status):
    client, session, _ = _client([DummyResponse(status)])

    with pytest.raises(ApiPermissionError):
        client.get("tasks")
    assert len(session.calls) == 1


def test_missing_token_fails_before_request():
    client, session, _ = _client([], token=None)

    with pytest.raises(ApiPermissionError):
        client.get("tasks")
    assert session.calls == []


def test_rate_limit_retries_then_gives_up():
    client, session, _ = _client([DummyResponse(429), DummyResponse(429)], max_attempts=2)

    with pytest.raises(ApiRateLimitError):
        client.get("tasks")
    assert len(session.calls) == 2
    assert client.rate_limiter.updates == [429, 429]


def test_client_error_and_bad_body():
    client, _, _ = _client([DummyResponse(404, text="not found")])
    with pytest.raises(ApiClientError):
        client.get("tasks/9")

    client, _, _ = _client([DummyResponse(body=["not", "an", "object"])])
    with pytest.raises(ApiClientError):
        client.get("tasks")

    client, _, _ = _client([DummyResponse(body=ValueError("no json"))])
    with pytest.raises(ApiClientError):
        client.get("tasks")


def test_rate_limiter_honours_retry_after():
    now = [1000.0]
    slept = []

    def sleep(seconds):
        slept.append(seconds)
        now[0] += seconds

    limiter = RateLimiter(clock=lambda: now[0], sleep=sleep)
    limiter.update({"Retry-After": "3"}, 429)
    assert limiter.last_wait == 3.0

    limiter.acquire()
    assert sum(slept) >= 3.0

    limiter.update({"x-ratelimit-remaining": "0", "x-ratelimit-reset": str(now[0] + 10)})
    assert limiter.last_remaining == 0
    assert limiter.last_wait == pytest.approx(10.0)


def test_assigned_page_carries_query_and_offset():
    client, session, _ = _client(
        [DummyResponse(body={"data": [{"gid": "1"}], "next_page": {"offset": "tok2"}})]
    )
    source = RemoteTaskSource(client, "ws-1", "u-me", page_size=50)

    records, next_offset = source.list_assigned_page(SourceQuery("now"), "tok1")

    assert records == [{"gid": "1"}]
    assert next_offset == "tok2"
    params = session.calls[0]["params"]
    assert params["assignee"] == "u-me"
    assert params["workspace"] == "ws-1"
    assert params["limit"] == 50
    assert params["completed_since"] == "now"
    assert params["offset"] == "tok1"


def test_subtasks_follow_all_pages():
    client, session, _ = _client(
        [
            DummyResponse(body={"data": [{"gid": "a"}], "next_page": {"offset": "o1"}}),
            DummyResponse(body={"data": [{"gid": "b"}], "next_page": None}),
        ]
    )
    source = RemoteTaskSource(client, "ws-1", "u-me")

    records = source.list_subtasks("R")

    assert [r["gid"] for r in records] == ["a", "b"]
    assert session.calls[0]["url"].endswith("/tasks/R/subtasks")
    assert "offset" not in session.calls[0]["params"]
    assert session.calls[1]["params"]["offset"] == "o1"


def test_list_response_without_data_is_unavailable():
    client, _, _ = _client([DummyResponse(body={"errors": []})])
    with pytest.raises(SourceUnavailable):
        RemoteTaskSource(client, "ws-1", "u-me").list_subtasks("R")


def test_writes_wrap_data_and_comments_are_filtered():
    client, session, _ = _client(
        [
            DummyResponse(body={"data": {"gid": "R", "name": "New"}}),
            DummyResponse(body={"data": {"gid": "n1", "name": "Child"}}),
            DummyResponse(
                body={
                    "data": [
                        {"gid": "s1", "type": "system", "text": "assigned"},
                        {"gid": "s2", "type": "comment", "text": "looks good"},
                    ]
                }
            ),
        ]
    )
    source = RemoteTaskSource(client, "ws-1", "u-me")

    assert source.update_task("R", {"name": "New"})["name"] == "New"
    assert session.calls[0]["method"] == "PUT"
    assert session.calls[0]["json"] == {"data": {"name": "New"}}

    created = source.create_subtask("R", "Child", "u-me")
    assert created["parent"] == {"gid": "R"}
    assert created["completed"] is False
    assert session.calls[1]["json"] == {"data": {"name": "Child", "assignee": "u-me"}}

    comments = source.list_comments("R")
    assert [c["gid"] for c in comments] == ["s2"]
