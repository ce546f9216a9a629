import pytest
import requests

from services.notifications import (
    CONFIRMATION, OVERDUE, REMINDER,
    LogChannel, Notifier, WhatsAppChannel, build_notifier,
    format_rupiah, render_text, to_msisdn,
)
from tests.utils import FakeResponse, RecordingChannel

TENANT = {"id": "t1", "name": "Budi", "phone": "0812-3456-7890",
          "room": {"number": "101"}, "property_name": "Kos Mawar"}
PAYMENT = {"id": "p1", "amount": 1500000.0, "type": "rent",
           "due_date": "2026-10-31T16:59:59Z", "paid_at": "2026-10-20T03:15:00Z",
           "redirect_url": None}


def test_helpers():
    assert format_rupiah(1500000) == "Rp 1.500.000"
    assert format_rupiah(None) == "Rp 0"
    assert to_msisdn("0812-3456-7890") == "6281234567890"
    assert to_msisdn("+62 812 1") == "628121"
    assert to_msisdn("") is None


def test_render_text_uses_local_dates():
    text = render_text(REMINDER, TENANT, PAYMENT)
    assert "Rp 1.500.000" in text
    assert "31 October 2026" in text  # 23:59:59 in Jakarta
    assert "proof of payment" in text

    with_link = render_text(REMINDER, TENANT, dict(PAYMENT, redirect_url="https://pay/x"))
    assert "https://pay/x" in with_link
    assert "20 October 2026" in render_text(CONFIRMATION, TENANT, PAYMENT)
    assert "overdue" in render_text(OVERDUE, TENANT, PAYMENT)


def test_notifier_never_raises():
    ch = RecordingChannel()
    ch.fail = True
    res = Notifier(ch).notify(CONFIRMATION, TENANT, PAYMENT)
    assert res.ok is False
    assert "down" in res.error


def test_notifier_without_tenant_is_skipped():
    ch = RecordingChannel()
    res = Notifier(ch).notify(REMINDER, None, PAYMENT)
    assert res.ok is False
    assert ch.sent == []


def test_notifier_rejects_unknown_kind():
    with pytest.raises(ValueError):
        Notifier(LogChannel()).notify("birthday", TENANT, PAYMENT)


class _FakePost:
    def __init__(self, response=None, error=None):
        self.headers = {}
        self.posts = []
        self.response = response or FakeResponse(200, {"messages": [{"id": "wamid.1"}]})
        self.error = error

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json, timeout))
        if self.error:
            raise self.error
        return self.response


def test_whatsapp_template_message():
    http = _FakePost()
    ch = WhatsAppChannel("1234", "token", session=http)
    assert Notifier(ch).notify(CONFIRMATION, TENANT, PAYMENT).ok
    url, body, timeout = http.posts[0]
    assert url == "https://graph.facebook.com/v17.0/1234/messages"
    assert body["to"] == "6281234567890"
    assert body["template"]["name"] == "payment_confirmation"
    params = [p["text"] for p in body["template"]["components"][0]["parameters"]]
    assert params == ["Budi", "Rp 1.500.000", "20 October 2026"]
    assert http.headers["Authorization"] == "Bearer token"


def test_whatsapp_reminder_is_plain_text():
    http = _FakePost()
    Notifier(WhatsAppChannel("1234", "token", session=http)).notify(REMINDER, TENANT, PAYMENT)
    assert http.posts[0][1]["type"] == "text"


def test_whatsapp_failures_are_contained():
    http = _FakePost(error=requests.ConnectionError("no route"))
    res = Notifier(WhatsAppChannel("1234", "token", session=http)).notify(
        OVERDUE, TENANT, PAYMENT)
    assert res.ok is False

    http = _FakePost(response=FakeResponse(401, {}))
    res = Notifier(WhatsAppChannel("1234", "token", session=http)).notify(
        OVERDUE, TENANT, PAYMENT)
    assert res.ok is False

    res = Notifier(WhatsAppChannel("1234", "token", session=_FakePost())).notify(
        OVERDUE, dict(TENANT, phone=None), PAYMENT)
    assert res.ok is False


def test_build_notifier_from_config():
    assert build_notifier({}).channel.name == "log"
    assert build_notifier({"NOTIFY_CHANNEL": "whatsapp", "WHATSAPP_PHONE_NUMBER_ID": "1",
                           "WHATSAPP_ACCESS_TOKEN": "t"}).channel.name == "whatsapp"
    with pytest.raises(RuntimeError):
        build_notifier({"NOTIFY_CHANNEL": "whatsapp"})
    with pytest.raises(RuntimeError):
        build_notifier({"NOTIFY_CHANNEL": "pigeon"})
