#!/usr/bin/env python3
"""检查 GitHub 上是否有新版本发布"""

import logging
import re
from typing import Optional, Tuple

import requests

from errors import VersionCheckError

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
RELEASE_REPO = "v2rayA/v2rayA"
LATEST_RELEASE_URL = f"https://api.github.com/repos/{RELEASE_REPO}/releases/latest"

_VERSION_RE = re.compile(r"(\d+)")


def _version_key(version: str) -> Tuple[int, ...]:
    return tuple(int(part) for part in _VERSION_RE.findall(version))


def is_newer(remote: str, current: str) -> bool:
    """按数字分段比较版本号，忽略 v 前缀等非数字字符"""
    return _version_key(remote) > _version_key(current)


def check_update(
    current: str = VERSION,
    session: Optional[requests.Session] = None,
    timeout: float = 15.0,
) -> Tuple[bool, str]:
    """返回 (是否有新版本, 远端版本号)

    Raises:
        VersionCheckError: 查询失败
    """
    session = session or requests.Session()
    try:
        resp = session.get(LATEST_RELEASE_URL, timeout=timeout)
        resp.raise_for_status()
        remote = resp.json()["tag_name"]
    except (requests.RequestException, ValueError, LookupError, TypeError) as e:
        raise VersionCheckError(f"failed to check update: {e}") from e
    remote = str(remote).lstrip("v")
    found_new = is_newer(remote, current)
    if found_new:
        logger.info(f"New version found: {remote} (current {current})")
    return found_new, remote
