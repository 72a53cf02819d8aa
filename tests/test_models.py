"""Tests for the shared data models and job payload schemas."""
import pytest
from pydantic import ValidationError

from models.schemas import (
    BatchResult, CompletedEmailJob, ErrorKind, JobOutcome, JobStatus, NotificationJob,
    PasswordResetOtpPayload, RawEmailPayload, WebPushRawPayload,
)


class TestJobOutcome:

    def test_ack_outcomes(self):
        assert JobOutcome.sent().ack is True
        assert JobOutcome.skipped("dup").status == JobStatus.SKIPPED

    def test_nack_outcomes(self):
        retry = JobOutcome.retry("timeout")
        assert retry.ack is False
        assert retry.error == ErrorKind.TRANSIENT
        dead = JobOutcome.dead("bad payload")
        assert dead.ack is False
        assert dead.error == ErrorKind.PERMANENT


class TestBatchResult:

    def test_disabled_result(self):
        result = BatchResult.disabled_result()
        assert result.disabled is True
        assert result.processed == 0
        assert result.failed == 0
        assert result.completed_at is not None

    def test_success_follows_errors(self):
        result = BatchResult(processed=3)
        assert result.success is True
        result.errors.append("tag_1: boom")
        assert result.success is False

    def test_to_dict_keeps_recent_errors(self):
        result = BatchResult(errors=[f"e{i}" for i in range(25)])
        data = result.to_dict()
        assert data["errors"] == [f"e{i}" for i in range(15, 25)]
        assert set(data) >= {"processed", "failed", "disabled", "sent", "skipped", "retried", "dead"}


class TestPayloads:

    def test_camel_case_and_snake_case_accepted(self):
        a = PasswordResetOtpPayload.model_validate({"to": "x@y.z", "code": "1", "expiresInMinutes": 5})
        b = PasswordResetOtpPayload.model_validate({"to": "x@y.z", "code": "1", "expires_in_minutes": 5})
        assert a.expires_in_minutes == b.expires_in_minutes == 5

    def test_otp_defaults(self):
        payload = PasswordResetOtpPayload.model_validate({"to": "x@y.z", "code": 42})
        assert payload.code == "42"
        assert payload.expires_in_minutes == 15
        assert payload.locale == "en"

    def test_raw_email_from_alias(self):
        payload = RawEmailPayload.model_validate({
            "idempotencyKey": "k", "to": "a@b.c", "subject": "s", "html": "h", "from": "x@y.z",
        })
        assert payload.from_address == "x@y.z"
        assert payload.attachments == []

    def test_webpush_requires_keys(self):
        with pytest.raises(ValidationError):
            WebPushRawPayload.model_validate({
                "idempotencyKey": "k", "subscription": {"endpoint": "https://p", "keys": {"auth": "a"}},
            })

    def test_typed_payload_unknown_kind(self):
        assert NotificationJob(kind="unknown.kind", payload={"a": 1}).typed_payload() is None

    def test_typed_payload_known_kind(self):
        job = NotificationJob(kind="email.password_reset_otp", payload={"to": "a@b.c", "code": "9"})
        assert isinstance(job.typed_payload(), PasswordResetOtpPayload)

    def test_completed_email_defaults(self):
        job = CompletedEmailJob.model_validate({"orderId": 12, "merchantId": 3})
        assert job.order_id == "12"
        assert job.customer_name == "Customer"
        assert job.merchant_name == "Restaurant"
        assert job.currency == "IDR"
        assert job.dedup_key == "completed_email:12"

    def test_completed_email_requires_order_id(self):
        with pytest.raises(ValidationError):
            CompletedEmailJob.model_validate({"orderId": "", "merchantId": "3"})
