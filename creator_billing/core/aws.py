from __future__ import annotations

import boto3
from twilio.rest import Client as TwilioClient

from .settings import S

_session = boto3.session.Session(region_name=S.aws_region or "us-east-1")

ddb = _session.resource("dynamodb")

# Twilio is used for SMS only when credentials are set; SNS otherwise.
twilio = None
if S.twilio_account_sid and S.twilio_auth_token:
    twilio = TwilioClient(S.twilio_account_sid, S.twilio_auth_token)


def ses_client():
    return _session.client("ses")


def sns_client():
    return _session.client("sns")
