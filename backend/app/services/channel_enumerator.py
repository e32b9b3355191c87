from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

from backend.app.services.quota_ledger import QuotaLedger
from backend.app.services.youtube_client import MAX_PAGE_SIZE, as_dict, as_list

LOGGER = logging.getLogger("subfeed.channels")

DEFAULT_PAGE_DELAY_SECONDS = 0.1
MAX_SUBSCRIPTION_PAGES = 200


class SubscriptionPagingError(RuntimeError):
    pass


@dataclass(frozen=True)
class ChannelSubscription:
    channel_id: str
    channel_name: str


class SubscriptionsClient(Protocol):
    def list_subscriptions(
        self,
        access_token: str,
        *,
        page_token: str | None = None,
        page_size: int = MAX_PAGE_SIZE,
    ) -> dict[str, Any]:
        ...


class ChannelEnumerator:
    """Walks the user's subscription listing page by page.

    One `subscriptions` unit is charged before every page. Provider and quota errors
    propagate unchanged so the caller can map them onto a sync status. A listing that
    keeps paging past `MAX_SUBSCRIPTION_PAGES` or repeats a page token raises
    `SubscriptionPagingError` rather than returning a partial channel set.
    """

    def __init__(
        self,
        *,
        client: SubscriptionsClient,
        quota_ledger: QuotaLedger,
        page_size: int = MAX_PAGE_SIZE,
        page_delay_seconds: float = DEFAULT_PAGE_DELAY_SECONDS,
    ) -> None:
        self._client = client
        self._quota_ledger = quota_ledger
        self._page_size = max(1, min(MAX_PAGE_SIZE, page_size))
        self._page_delay_seconds = max(0.0, page_delay_seconds)

    def list_all_subscriptions(self, access_token: str) -> list[ChannelSubscription]:
        channels: list[ChannelSubscription] = []
        seen_channel_ids: set[str] = set()
        seen_page_tokens: set[str] = set()
        page_token: str | None = None
        pages = 0

        while True:
            self._quota_ledger.consume("subscriptions", 1)
            payload = self._client.list_subscriptions(
                access_token,
                page_token=page_token,
                page_size=self._page_size,
            )
            pages += 1

            for item in as_list(payload.get("items")):
                channel = _subscription_from_item(as_dict(item))
                if channel is None or channel.channel_id in seen_channel_ids:
                    continue
                seen_channel_ids.add(channel.channel_id)
                channels.append(channel)

            next_page_token = payload.get("nextPageToken")
            if not isinstance(next_page_token, str) or not next_page_token:
                break
            if pages >= MAX_SUBSCRIPTION_PAGES or next_page_token in seen_page_tokens:
                LOGGER.error(
                    "subscription paging aborted pages=%s channels=%s", pages, len(channels)
                )
                raise SubscriptionPagingError(
                    f"Subscription listing did not finish after {pages} pages "
                    f"({len(channels)} channels seen)"
                )
            seen_page_tokens.add(next_page_token)
            page_token = next_page_token
            if self._page_delay_seconds > 0:
                time.sleep(self._page_delay_seconds)

        LOGGER.info("subscriptions enumerated channels=%s pages=%s", len(channels), pages)
        return channels


def _subscription_from_item(item: dict[str, Any]) -> ChannelSubscription | None:
    snippet = as_dict(item.get("snippet"))
    resource_id = as_dict(snippet.get("resourceId"))
    channel_id = resource_id.get("channelId")
    if not isinstance(channel_id, str) or not channel_id.strip():
        return None
    title = snippet.get("title")
    channel_name = title.strip() if isinstance(title, str) and title.strip() else channel_id
    return ChannelSubscription(channel_id=channel_id.strip(), channel_name=channel_name)
