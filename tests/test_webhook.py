from __future__ import annotations

import json

import allure
import httpx

from odm_node.taskqueue.webhook import WebhookNotifier

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Webhooks"),
]


def _notifier(handler) -> WebhookNotifier:
    return WebhookNotifier(client=httpx.Client(transport=httpx.MockTransport(handler)))


def test_notify_posts_json_payload() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    with _notifier(_handler) as notifier:
        assert notifier.notify("http://hooks.test/done", {"uuid": "abc", "status": {"code": 40}})

    assert seen[0].method == "POST"
    assert json.loads(seen[0].content) == {"uuid": "abc", "status": {"code": 40}}


def test_notify_reports_http_error_status() -> None:
    with _notifier(lambda request: httpx.Response(500)) as notifier:
        assert notifier.notify("http://hooks.test/done", {"uuid": "abc"}) is False


def test_notify_swallows_transport_errors() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with _notifier(_handler) as notifier:
        assert notifier.notify("http://hooks.test/done", {"uuid": "abc"}) is False


def test_notify_handles_timeouts() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with _notifier(_handler) as notifier:
        assert notifier.notify("http://hooks.test/done", {"uuid": "abc"}) is False
