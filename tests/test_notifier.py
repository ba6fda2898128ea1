"""Tests for outbound email notifications."""
import httpx

from treasury.services.notifier import EmailNotifier, NotificationType


class TestEmailNotifier:
    def test_posts_type_and_record_id(self, notifier, sent_notifications):
        assert notifier.notify(NotificationType.STATUS_CHANGE, "r1", previousStatus="submitted", newStatus="approved")

        assert sent_notifications == [{
            "type": "status_change",
            "recordId": "r1",
            "previousStatus": "submitted",
            "newStatus": "approved",
        }]

    def test_disabled_without_url(self):
        notifier = EmailNotifier("")
        assert not notifier.enabled
        assert notifier.notify(NotificationType.SUBMISSION, "r1") is False

    def test_server_error_is_logged_not_raised(self, caplog):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        notifier = EmailNotifier("http://email.test/notify", transport=transport)

        assert notifier.notify(NotificationType.DEPOSIT_SUBMISSION, "d1") is False
        assert "deposit_submission for d1 failed" in caplog.text

    def test_connection_error_is_logged_not_raised(self, caplog):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        notifier = EmailNotifier("http://email.test/notify", transport=httpx.MockTransport(refuse))

        assert notifier.notify(NotificationType.COMMENT, "r2") is False
        assert "connection refused" in caplog.text
