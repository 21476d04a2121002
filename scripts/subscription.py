#!/usr/bin/env python3
"""订阅更新：拉取订阅地址，解析其中的分享链接并替换对应 v2 订阅的服务器列表"""

import base64
import binascii
import logging
from datetime import datetime
from typing import List, Optional

import requests

from configure import ServerRawV2, SubscriptionRawV2
from db_helper import Store
from errors import ServerObjError, StoreError, SubscriptionUpdateError
from server_obj import from_link

logger = logging.getLogger(__name__)

USER_AGENT = "proxyd"


def decode_subscription(body: str) -> List[str]:
    """订阅内容为 base64 编码的链接列表（每行一个）；未编码的纯文本也接受"""
    text = body.strip()
    if "://" not in text:
        compact = "".join(text.split()).replace("-", "+").replace("_", "/")
        compact += "=" * (-len(compact) % 4)
        try:
            text = base64.b64decode(compact, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise SubscriptionUpdateError(f"subscription is not base64 encoded: {e}") from e
    return [line.strip() for line in text.splitlines() if line.strip()]


def parse_servers(links: List[str]) -> List[ServerRawV2]:
    servers = []
    for link in links:
        try:
            servers.append(ServerRawV2(server_obj=from_link(link)))
        except ServerObjError as e:
            logger.debug(f"skip link: {e}")
    return servers


class SubscriptionUpdater:
    def __init__(self, store: Store, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self.store = store
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch(self, address: str) -> str:
        try:
            resp = self.session.get(address, timeout=self.timeout, headers={"User-Agent": USER_AGENT})
            resp.raise_for_status()
        except requests.RequestException as e:
            raise SubscriptionUpdateError(f"failed to fetch {address}: {e}") from e
        return resp.text

    def update(self, index: int) -> SubscriptionRawV2:
        """刷新第 index 个订阅（下标从 0 开始），返回写入后的记录

        Raises:
            SubscriptionUpdateError: 下标越界、拉取失败或没有可解析的服务器
        """
        subscriptions = self.store.get_subscriptions_v2()
        if not 0 <= index < len(subscriptions):
            raise SubscriptionUpdateError(f"subscription index out of range: {index}")
        current = subscriptions[index]

        servers = parse_servers(decode_subscription(self.fetch(current.address)))
        if not servers:
            raise SubscriptionUpdateError(f"no valid server found in {current.address}")

        updated = current.model_copy(update={
            "servers": servers,
            "status": f"Last update: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        })
        try:
            self.store.set_subscription_v2(index, updated)
        except StoreError as e:
            raise SubscriptionUpdateError(f"failed to save subscription {index}: {e}") from e
        logger.debug(f"subscription {index} updated with {len(servers)} servers")
        return updated
