from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Tuple


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default) not in ("0", "false", "False", "")


def _int_list(name: str, default: str) -> Tuple[int, ...]:
    raw = os.environ.get(name, default)
    return tuple(int(p.strip()) for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class Settings:
    # AWS
    aws_region: str = os.environ.get("AWS_REGION", "us-east-1")

    # DynamoDB tables
    subscriptions_table_name: str = os.environ.get("SUBSCRIPTIONS_TABLE_NAME", "subscriptions")
    subscriptions_due_index: str = os.environ.get("SUBSCRIPTIONS_DUE_INDEX", "status-current_period_end-index")
    subscriptions_creator_index: str = os.environ.get("SUBSCRIPTIONS_CREATOR_INDEX", "creator_id-index")
    payments_table_name: str = os.environ.get("PAYMENTS_TABLE_NAME", "payments")
    payments_subscription_index: str = os.environ.get("PAYMENTS_SUBSCRIPTION_INDEX", "subscription_id-created_at-index")
    payments_status_index: str = os.environ.get("PAYMENTS_STATUS_INDEX", "status-created_at-index")
    reminders_table_name: str = os.environ.get("REMINDERS_TABLE_NAME", "reminders")
    reminders_due_index: str = os.environ.get("REMINDERS_DUE_INDEX", "status-scheduled_for-index")
    reminders_entity_index: str = os.environ.get("REMINDERS_ENTITY_INDEX", "entity_key-index")
    locks_table_name: str = os.environ.get("LOCKS_TABLE_NAME", "locks")
    profiles_table_name: str = os.environ.get("PROFILES_TABLE_NAME", "profiles")
    users_table_name: str = os.environ.get("USERS_TABLE_NAME", "users")
    requests_table_name: str = os.environ.get("REQUESTS_TABLE_NAME", "requests")
    payroll_table_name: str = os.environ.get("PAYROLL_TABLE_NAME", "payroll_periods")
    activity_table_name: str = os.environ.get("ACTIVITY_TABLE_NAME", "activity")
    push_devices_table_name: str = os.environ.get("PUSH_DEVICES_TABLE_NAME", "push_devices")

    # TTL
    ddb_ttl_attr: str = os.environ.get("DDB_TTL_ATTR", "ttl_epoch")
    activity_ttl_days: int = int(os.environ.get("ACTIVITY_TTL_DAYS", "365"))

    # Jobs trigger surface
    jobs_api_key: str = os.environ.get("JOBS_API_KEY", "")

    # Locks
    lock_backend: str = os.environ.get("LOCK_BACKEND", "dynamodb").lower()
    # Must outlast charge + verify + transfer calls (3 x PAYSTACK_TIMEOUT_SECONDS)
    # plus two SIDE_EFFECT_TIMEOUT_SECONDS waits.
    billing_lock_ttl_ms: int = int(os.environ.get("BILLING_LOCK_TTL_MS", "120000"))
    reminder_schedule_lock_ttl_ms: int = int(os.environ.get("REMINDER_SCHEDULE_LOCK_TTL_MS", "10000"))
    reminder_delivery_lock_ttl_ms: int = int(os.environ.get("REMINDER_DELIVERY_LOCK_TTL_MS", "60000"))

    # Paystack
    paystack_base_url: str = os.environ.get("PAYSTACK_BASE_URL", "https://api.paystack.co").rstrip("/")
    paystack_secret_key: str = os.environ.get("PAYSTACK_SECRET_KEY", "")
    paystack_timeout_seconds: int = int(os.environ.get("PAYSTACK_TIMEOUT_SECONDS", "20"))

    # Billing
    max_retry_attempts: int = int(os.environ.get("MAX_RETRY_ATTEMPTS", "3"))
    grace_period_days: int = int(os.environ.get("GRACE_PERIOD_DAYS", "3"))
    retry_delays_seconds: Tuple[int, ...] = field(
        default_factory=lambda: _int_list("RETRY_DELAYS_SECONDS", "0,3600,86400")
    )
    retry_window_days: int = int(os.environ.get("RETRY_WINDOW_DAYS", "7"))
    billing_page_size: int = int(os.environ.get("BILLING_PAGE_SIZE", "50"))

    # Reminders
    reminder_batch_size: int = int(os.environ.get("REMINDER_BATCH_SIZE", "100"))
    reminder_retry_delay_seconds: int = int(os.environ.get("REMINDER_RETRY_DELAY_SECONDS", "3600"))
    reminder_max_retries: int = int(os.environ.get("REMINDER_MAX_RETRIES", "2"))
    side_effect_timeout_seconds: int = int(os.environ.get("SIDE_EFFECT_TIMEOUT_SECONDS", "10"))

    # Public links used in notifications
    public_base_url: str = os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
    public_page_url: str = os.environ.get("PUBLIC_PAGE_URL", "http://localhost:5173").rstrip("/")

    # Email (SES)
    email_enabled: bool = _flag("EMAIL_ENABLED", "1")
    email_from: str = os.environ.get("EMAIL_FROM", "")
    alert_email: str = os.environ.get("ALERT_EMAIL", os.environ.get("EMAIL_FROM", ""))

    # SMS (Twilio, else SNS)
    sms_enabled: bool = _flag("ENABLE_SMS", "0")
    twilio_account_sid: str = os.environ.get("TWILIO_ACCOUNT_SID", "")
    twilio_auth_token: str = os.environ.get("TWILIO_AUTH_TOKEN", "")
    twilio_from_number: str = os.environ.get("TWILIO_FROM_NUMBER", "")

    # Push / FCM
    push_enabled: bool = _flag("PUSH_ENABLED", "0")
    fcm_project_id: str = os.environ.get("FCM_PROJECT_ID", "")
    fcm_client_email: str = os.environ.get("FCM_CLIENT_EMAIL", "")
    fcm_private_key: str = os.environ.get("FCM_PRIVATE_KEY", "")  # keep \n escaped

    # Observability
    log_level: str = os.environ.get("LOG_LEVEL", "INFO").upper()
    audit_log_enabled: bool = _flag("AUDIT_LOG_ENABLED", "1")
    metrics_enabled: bool = _flag("METRICS_ENABLED", "1")


S = Settings()
