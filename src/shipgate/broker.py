# broker.py
from __future__ import annotations

import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Optional

from .errors import ExpiredAssertionError, UntrustedIssuerError
from .identity import Assertion, TrustedIssuer, decode_assertion
from .model import CredentialGrant

DEFAULT_GRANT_TTL = 15 * 60  # seconds
# Jobs re-issue a grant when less than this many seconds remain.
GRANT_REFRESH_MARGIN = 60

# (job, assertion, scope, ttl_seconds) -> env vars handed to the job
Exchange = Callable[[str, Assertion, tuple, int], Dict[str, str]]


class CredentialBroker:
    """
    Exchanges a short-lived identity assertion for a scoped, time-boxed grant.

    Grants are handed to exactly one job invocation and never persisted.
    The grant window is fixed (grant_ttl) and independent of job duration;
    callers re-issue when a grant is about to run out.
    """

    def __init__(
        self,
        issuers: Iterable[TrustedIssuer],
        *,
        grant_ttl: int = DEFAULT_GRANT_TTL,
        exchange: Optional[Exchange] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.issuers: Dict[str, TrustedIssuer] = {i.url: i for i in issuers}
        self.grant_ttl = int(grant_ttl)
        self.exchange = exchange
        self.clock = clock

    def validate(self, token: str) -> Assertion:
        assertion = decode_assertion(token)
        issuer = self.issuers.get(assertion.issuer)
        if issuer is None:
            raise UntrustedIssuerError(f"Issuer {assertion.issuer!r} is not trusted")
        issuer.verify(assertion)
        if assertion.expires_at <= self.clock():
            raise ExpiredAssertionError(
                f"Identity assertion for {assertion.subject!r} expired at "
                f"{datetime.fromtimestamp(assertion.expires_at, tz=timezone.utc).isoformat()}"
            )
        return assertion

    def issue(self, job: str, assertion: str, scope: Iterable[str]) -> CredentialGrant:
        verified = self.validate(assertion)
        scope_t = tuple(sorted(set(scope)))
        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)

        env: Dict[str, str] = {}
        if self.exchange is not None:
            env.update(self.exchange(job, verified, scope_t, self.grant_ttl))

        return CredentialGrant(
            job=job,
            subject=verified.subject,
            scope=scope_t,
            expires_at=now + timedelta(seconds=self.grant_ttl),
            token=secrets.token_urlsafe(32),
            env=env,
        )


class StsExchange:
    """
    Trade the raw assertion for AWS credentials via STS AssumeRoleWithWebIdentity.

    `role_arns` maps a scope to the role that grants it; the first scope with a
    role wins, otherwise `default_role_arn` is used.
    """

    def __init__(
        self,
        default_role_arn: str | None,
        *,
        region: str = "us-east-1",
        role_arns: Optional[Dict[str, str]] = None,
        client: Any = None,
    ):
        self.default_role_arn = default_role_arn
        self.region = region
        self.role_arns = dict(role_arns or {})
        self._client = client

    @property
    def client(self):
        if self._client is None:
            import boto3
            self._client = boto3.client("sts", region_name=self.region)
        return self._client

    def role_for(self, scope: tuple) -> str:
        for s in scope:
            if s in self.role_arns:
                return self.role_arns[s]
        if not self.default_role_arn:
            raise UntrustedIssuerError(f"No AWS role configured for scope {list(scope)}")
        return self.default_role_arn

    def __call__(self, job: str, assertion: Assertion, scope: tuple, ttl: int) -> Dict[str, str]:
        resp = self.client.assume_role_with_web_identity(
            RoleArn=self.role_for(scope),
            RoleSessionName=f"shipgate-{job}"[:64],
            WebIdentityToken=assertion.raw,
            DurationSeconds=max(ttl, 900),  # STS minimum
        )
        creds = resp["Credentials"]
        return {
            "AWS_ACCESS_KEY_ID": creds["AccessKeyId"],
            "AWS_SECRET_ACCESS_KEY": creds["SecretAccessKey"],
            "AWS_SESSION_TOKEN": creds["SessionToken"],
            "AWS_REGION": self.region,
        }
