#!/usr/bin/env python3
"""
GFWList 规则文件更新

规则来源为 Loyalsoldier/v2ray-rules-dat 的最新 release，
下载其中的 geosite.dat 并保存为资源目录下的 LoyalsoldierSite.dat。
本地版本号记录在同目录的 LoyalsoldierSite.dat.version 中。
"""

import contextlib
import logging
import os
from pathlib import Path
from typing import Optional

import requests

from errors import RuleListUpdateError

logger = logging.getLogger(__name__)

RULES_REPO = "Loyalsoldier/v2ray-rules-dat"
LATEST_RELEASE_URL = f"https://api.github.com/repos/{RULES_REPO}/releases/latest"
DOWNLOAD_URL = f"https://github.com/{RULES_REPO}/releases/download/{{tag}}/geosite.dat"
LOCAL_FILENAME = "LoyalsoldierSite.dat"
VERSION_SUFFIX = ".version"


class RuleListUpdater:
    def __init__(self, asset_dir: Path, session: Optional[requests.Session] = None, timeout: float = 60.0):
        self.asset_dir = Path(asset_dir)
        self.session = session or requests.Session()
        self.timeout = timeout

    @property
    def local_path(self) -> Path:
        return self.asset_dir / LOCAL_FILENAME

    @property
    def version_path(self) -> Path:
        return self.asset_dir / (LOCAL_FILENAME + VERSION_SUFFIX)

    def local_version(self) -> str:
        """本地规则文件的版本，文件不存在时返回空字符串"""
        if not self.local_path.exists():
            return ""
        try:
            return self.version_path.read_text().strip()
        except OSError:
            return ""

    def remote_version(self) -> str:
        try:
            resp = self.session.get(LATEST_RELEASE_URL, timeout=self.timeout)
            resp.raise_for_status()
            tag = resp.json()["tag_name"]
        except (requests.RequestException, ValueError, LookupError, TypeError) as e:
            raise RuleListUpdateError(f"failed to get latest version of GFWList: {e}") from e
        if not tag:
            raise RuleListUpdateError("failed to get latest version of GFWList: empty tag")
        return tag

    def _download(self, tag: str) -> None:
        tmp_path = self.local_path.with_name(LOCAL_FILENAME + ".download")
        try:
            self.asset_dir.mkdir(parents=True, exist_ok=True)
            with self.session.get(DOWNLOAD_URL.format(tag=tag), stream=True, timeout=self.timeout) as resp:
                resp.raise_for_status()
                with open(tmp_path, "wb") as f:
                    for chunk in resp.iter_content(chunk_size=64 * 1024):
                        if chunk:
                            f.write(chunk)
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, self.local_path)
            self.version_path.write_text(tag + "\n")
        except (requests.RequestException, OSError) as e:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise RuleListUpdateError(f"failed to download GFWList {tag}: {e}") from e

    def check_and_update(self) -> str:
        """远端版本与本地不同时下载新规则，返回更新后的本地版本

        Raises:
            RuleListUpdateError: 查询或下载失败
        """
        remote = self.remote_version()
        local = self.local_version()
        if local == remote:
            logger.debug(f"GFWList is up to date: {local}")
            return local
        logger.info(f"Updating GFWList: {local or 'none'} -> {remote}")
        self._download(remote)
        return remote
