"""External Data Gateway: per-entity-type metric fetches from Google Ads.

WHAT:
    - AdsDataGateway: the call surface the refresh worker depends on
    - GoogleAdsGateway: GAQL implementation on the google-ads SDK

WHY:
    The worker only cares about the call signature and the error text
    (rate-limit / quota hints). Keeping the SDK behind this seam lets tests
    drive the worker with a plain fake.

ROW SHAPE (all fetches):
    id, name, status, spend (currency units), clicks, impressions,
    conversions, conversion_value; campaigns add `type`, daily metrics add
    `date` (YYYY-MM-DD) instead of id/name/status.

NOTE:
    No retries here. Errors propagate untouched so the worker can classify
    "Retry in N seconds" and RESOURCE_EXHAUSTED itself.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Protocol

from metricsync.config import get_settings

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


class AdsDataGateway(Protocol):
    def fetch_campaigns(
        self, auth_token: Optional[str], customer_id: str, start_date: date, end_date: date,
        manager_id: Optional[str] = None,
    ) -> List[Row]: ...

    def fetch_ad_groups(
        self, auth_token: Optional[str], customer_id: str, campaign_id: str, start_date: date,
        end_date: date, manager_id: Optional[str] = None,
    ) -> List[Row]: ...

    def fetch_keywords(
        self, auth_token: Optional[str], customer_id: str, ad_group_id: str, start_date: date,
        end_date: date, manager_id: Optional[str] = None,
    ) -> List[Row]: ...

    def fetch_ads(
        self, auth_token: Optional[str], customer_id: str, ad_group_id: str, start_date: date,
        end_date: date, manager_id: Optional[str] = None,
    ) -> List[Row]: ...

    def fetch_daily_metrics(
        self, auth_token: Optional[str], customer_id: str, start_date: date, end_date: date,
        manager_id: Optional[str] = None,
    ) -> List[Row]: ...


# =============================================================================
# GAQL
# =============================================================================

_METRIC_FIELDS = (
    "metrics.cost_micros, metrics.clicks, metrics.impressions, "
    "metrics.conversions, metrics.conversions_value"
)

CAMPAIGNS_QUERY = (
    "SELECT campaign.id, campaign.name, campaign.status, campaign.advertising_channel_type, "
    f"{_METRIC_FIELDS} FROM campaign "
    "WHERE segments.date BETWEEN '{start}' AND '{end}' AND campaign.status != 'REMOVED'"
)

AD_GROUPS_QUERY = (
    "SELECT ad_group.id, ad_group.name, ad_group.status, "
    f"{_METRIC_FIELDS} FROM ad_group "
    "WHERE campaign.id = {parent} AND segments.date BETWEEN '{start}' AND '{end}' "
    "AND ad_group.status != 'REMOVED'"
)

KEYWORDS_QUERY = (
    "SELECT ad_group_criterion.criterion_id, ad_group_criterion.keyword.text, "
    f"ad_group_criterion.status, {_METRIC_FIELDS} FROM keyword_view "
    "WHERE ad_group.id = {parent} AND segments.date BETWEEN '{start}' AND '{end}' "
    "AND ad_group_criterion.status != 'REMOVED'"
)

ADS_QUERY = (
    "SELECT ad_group_ad.ad.id, ad_group_ad.ad.name, ad_group_ad.status, "
    f"{_METRIC_FIELDS} FROM ad_group_ad "
    "WHERE ad_group.id = {parent} AND segments.date BETWEEN '{start}' AND '{end}' "
    "AND ad_group_ad.status != 'REMOVED'"
)

DAILY_METRICS_QUERY = (
    f"SELECT segments.date, {_METRIC_FIELDS} FROM customer "
    "WHERE segments.date BETWEEN '{start}' AND '{end}' ORDER BY segments.date"
)


def _normalize_customer_id(customer_id: str) -> str:
    return "".join(ch for ch in str(customer_id) if ch.isdigit())


def _enum_name(value: Any) -> Optional[str]:
    """proto-plus enums expose .name; plain strings pass through."""
    if value is None:
        return None
    return str(getattr(value, "name", value))


def _metric_values(metrics: Any) -> Row:
    return {
        "spend": (getattr(metrics, "cost_micros", 0) or 0) / 1_000_000,
        "clicks": int(getattr(metrics, "clicks", 0) or 0),
        "impressions": int(getattr(metrics, "impressions", 0) or 0),
        "conversions": float(getattr(metrics, "conversions", 0) or 0),
        "conversion_value": float(getattr(metrics, "conversions_value", 0) or 0),
    }


def _default_client_factory(refresh_token: Optional[str], login_customer_id: Optional[str]) -> Any:
    """Build an SDK client from OAuth tokens (per connection)."""
    from google.ads.googleads.client import GoogleAdsClient

    settings = get_settings()
    if not settings.GOOGLE_DEVELOPER_TOKEN or not settings.GOOGLE_CLIENT_ID or not settings.GOOGLE_CLIENT_SECRET:
        raise ValueError(
            "Missing required Google Ads settings: GOOGLE_DEVELOPER_TOKEN, GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET"
        )
    if not refresh_token:
        raise ValueError("Missing refresh token for Google Ads request")

    config = {
        "developer_token": settings.GOOGLE_DEVELOPER_TOKEN,
        "client_id": settings.GOOGLE_CLIENT_ID,
        "client_secret": settings.GOOGLE_CLIENT_SECRET,
        "refresh_token": refresh_token,
        "use_proto_plus": True,
    }
    if login_customer_id:
        login_customer_id = _normalize_customer_id(login_customer_id)
        # Only use if valid 10-digit ID; otherwise omit to avoid client error
        if len(login_customer_id) == 10:
            config["login_customer_id"] = login_customer_id

    return GoogleAdsClient.load_from_dict(config)


class GoogleAdsGateway:
    """AdsDataGateway backed by GAQL search.

    Usage:
        gateway = GoogleAdsGateway()
        rows = gateway.fetch_campaigns(token, "1234567890", start, end)
    """

    def __init__(
        self,
        client_factory: Callable[[Optional[str], Optional[str]], Any] = _default_client_factory,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self._client_factory = client_factory
        # Per-call deadline. Worker threads cannot be cancelled, so this is
        # what actually bounds a hung request.
        self.timeout_seconds = timeout_seconds

    def _search(self, auth_token: Optional[str], customer_id: str, manager_id: Optional[str], query: str):
        client = self._client_factory(auth_token, manager_id)
        service = client.get_service("GoogleAdsService")
        cid = _normalize_customer_id(customer_id)
        logger.debug("[GATEWAY] GAQL for %s: %s", cid, query)
        if self.timeout_seconds is None:
            return service.search(customer_id=cid, query=query)
        return service.search(customer_id=cid, query=query, timeout=self.timeout_seconds)

    def fetch_campaigns(self, auth_token, customer_id, start_date, end_date, manager_id=None) -> List[Row]:
        q = CAMPAIGNS_QUERY.format(start=start_date.isoformat(), end=end_date.isoformat())
        out: List[Row] = []
        for r in self._search(auth_token, customer_id, manager_id, q):
            c = r.campaign
            out.append({
                "id": str(c.id),
                "name": c.name,
                "status": _enum_name(c.status),
                "type": _enum_name(getattr(c, "advertising_channel_type", None)),
                **_metric_values(r.metrics),
            })
        return out

    def fetch_ad_groups(self, auth_token, customer_id, campaign_id, start_date, end_date, manager_id=None) -> List[Row]:
        q = AD_GROUPS_QUERY.format(
            parent=int(campaign_id), start=start_date.isoformat(), end=end_date.isoformat()
        )
        return [
            {
                "id": str(r.ad_group.id),
                "name": r.ad_group.name,
                "status": _enum_name(r.ad_group.status),
                **_metric_values(r.metrics),
            }
            for r in self._search(auth_token, customer_id, manager_id, q)
        ]

    def fetch_keywords(self, auth_token, customer_id, ad_group_id, start_date, end_date, manager_id=None) -> List[Row]:
        q = KEYWORDS_QUERY.format(
            parent=int(ad_group_id), start=start_date.isoformat(), end=end_date.isoformat()
        )
        return [
            {
                "id": str(r.ad_group_criterion.criterion_id),
                "text": r.ad_group_criterion.keyword.text,
                "status": _enum_name(r.ad_group_criterion.status),
                **_metric_values(r.metrics),
            }
            for r in self._search(auth_token, customer_id, manager_id, q)
        ]

    def fetch_ads(self, auth_token, customer_id, ad_group_id, start_date, end_date, manager_id=None) -> List[Row]:
        q = ADS_QUERY.format(
            parent=int(ad_group_id), start=start_date.isoformat(), end=end_date.isoformat()
        )
        return [
            {
                "id": str(r.ad_group_ad.ad.id),
                "name": r.ad_group_ad.ad.name or None,
                "status": _enum_name(r.ad_group_ad.status),
                **_metric_values(r.metrics),
            }
            for r in self._search(auth_token, customer_id, manager_id, q)
        ]

    def fetch_daily_metrics(self, auth_token, customer_id, start_date, end_date, manager_id=None) -> List[Row]:
        q = DAILY_METRICS_QUERY.format(start=start_date.isoformat(), end=end_date.isoformat())
        return [
            {"date": str(r.segments.date), **_metric_values(r.metrics)}
            for r in self._search(auth_token, customer_id, manager_id, q)
        ]
