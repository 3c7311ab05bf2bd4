from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .aws import ddb
from .settings import S

@dataclass(frozen=True)
class Tables:
    subscriptions: Any
    payments: Any
    reminders: Any
    locks: Any
    profiles: Any
    users: Any
    requests: Any
    payroll: Any
    activity: Any
    push_devices: Any

T = Tables(
    subscriptions=ddb.Table(S.subscriptions_table_name),
    payments=ddb.Table(S.payments_table_name),
    reminders=ddb.Table(S.reminders_table_name),
    locks=ddb.Table(S.locks_table_name),
    profiles=ddb.Table(S.profiles_table_name),
    users=ddb.Table(S.users_table_name),
    requests=ddb.Table(S.requests_table_name),
    payroll=ddb.Table(S.payroll_table_name),
    activity=ddb.Table(S.activity_table_name),
    push_devices=ddb.Table(S.push_devices_table_name),
)
