import smtplib
from unittest.mock import MagicMock, patch

import pytest

from composition.distributor import Distributor, EmailNotifier, dedupe_recipients
from runtime.errors import DistributionFailure


@pytest.fixture
def mosaic(tmp_path):
    path = tmp_path / "mosaic_abc.mp4"
    path.write_bytes(b"0" * 64)
    return path


@pytest.fixture
def notifier():
    return EmailNotifier(host="smtp.example.com", port=587, user="bot", password="pw", sender="bot@example.com")


def test_dedupe_recipients_is_case_insensitive_and_ordered():
    assert dedupe_recipients(["B@x", "a@x", "b@x ", "", None]) == ["b@x", "a@x"]


def test_upload_url_is_returned(mosaic):
    store = MagicMock()
    store.publish.return_value = "https://r2.example.com/bucket/mosaics/mosaic_abc.mp4"

    result = Distributor(object_store=store).distribute(mosaic)

    store.publish.assert_called_once_with(mosaic, "mosaics/mosaic_abc.mp4")
    assert result.uploaded
    assert result.url == "https://r2.example.com/bucket/mosaics/mosaic_abc.mp4"


def test_storage_failure_falls_back_to_local_url(mosaic):
    store = MagicMock()
    store.publish.side_effect = DistributionFailure("bucket unreachable")
    notify = MagicMock()

    result = Distributor(
        object_store=store, notifier=notify, public_base_url="http://boogie.local:8000/"
    ).distribute(mosaic, ["a@x"])

    assert not result.uploaded
    assert result.url == "http://boogie.local:8000/outputs/mosaic_abc.mp4"
    assert result.errors == ["bucket unreachable"]
    notify.send.assert_called_once_with(["a@x"], result.url, mosaic)


def test_no_recipients_sends_nothing(mosaic):
    notify = MagicMock()

    result = Distributor(notifier=notify).distribute(mosaic, [])

    notify.send.assert_not_called()
    assert not result.notified


def test_above_ceiling_sends_link_only(mosaic, notifier):
    with patch("composition.distributor.smtplib.SMTP") as smtp_cls:
        result = Distributor(notifier=notifier, attachment_max_bytes=32).distribute(mosaic, ["a@x", "A@x"])

    smtp = smtp_cls.return_value.__enter__.return_value
    smtp.send_message.assert_called_once()
    msg = smtp.send_message.call_args[0][0]
    assert list(msg.iter_attachments()) == []
    assert result.url in msg.get_content()
    assert smtp.send_message.call_args[1]["to_addrs"] == ["a@x"]
    assert result.notified
    assert not result.attached


def test_at_ceiling_is_link_only(mosaic, notifier):
    with patch("composition.distributor.smtplib.SMTP"):
        result = Distributor(notifier=notifier, attachment_max_bytes=64).distribute(mosaic, ["a@x"])

    assert not result.attached


def test_below_ceiling_attaches_file(mosaic, notifier):
    with patch("composition.distributor.smtplib.SMTP") as smtp_cls:
        result = Distributor(notifier=notifier, attachment_max_bytes=1024).distribute(mosaic, ["a@x", "b@x"])

    smtp = smtp_cls.return_value.__enter__.return_value
    msg = smtp.send_message.call_args[0][0]
    attachments = list(msg.iter_attachments())
    assert len(attachments) == 1
    assert attachments[0].get_filename() == "mosaic_abc.mp4"
    smtp.starttls.assert_called_once()
    smtp.login.assert_called_once_with("bot", "pw")
    assert result.attached


def test_mail_failure_is_not_fatal(mosaic, notifier):
    with patch("composition.distributor.smtplib.SMTP", side_effect=smtplib.SMTPConnectError(421, "busy")):
        result = Distributor(notifier=notifier).distribute(mosaic, ["a@x"])

    assert not result.notified
    assert result.url.endswith("/outputs/mosaic_abc.mp4")
    assert len(result.errors) == 1


def test_notifier_without_host_refuses(mosaic):
    with pytest.raises(DistributionFailure):
        EmailNotifier(host=None).send(["a@x"], "http://x", None)


def test_unreadable_attachment_is_not_fatal(mosaic, notifier):
    with patch("composition.distributor.smtplib.SMTP") as smtp_cls, \
            patch.object(type(mosaic), "read_bytes", side_effect=PermissionError("denied")):
        result = Distributor(notifier=notifier, attachment_max_bytes=1024).distribute(mosaic, ["a@x"])

    smtp_cls.assert_not_called()
    assert not result.notified
    assert not result.attached
    assert "denied" in result.errors[0]
