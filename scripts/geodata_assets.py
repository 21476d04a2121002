#!/usr/bin/env python3
"""
geoip.dat / geosite.dat 资源下载

本地缺失时，从 GitHub 取仓库最新 tag，再通过 jsDelivr CDN 下载对应版本的文件。
上游文件名与本地文件名可以不同（dlc.dat -> geosite.dat）。
单个资源失败只记录日志，不影响另一个资源和后续启动流程。
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional

import requests

from errors import AssetDownloadError

logger = logging.getLogger(__name__)

TAGS_URL = "https://api.github.com/repos/{repo}/tags"
CDN_URL = "https://cdn.jsdelivr.net/gh/{repo}@{tag}/{filename}"
DOWNLOAD_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class GeoAsset:
    repo: str
    filename: str   # 上游文件名
    localname: str  # 安装到本地的文件名


GEOIP = GeoAsset("v2rayA/dist-geoip", "geoip.dat", "geoip.dat")
GEOSITE = GeoAsset("v2rayA/dist-domain-list-community", "dlc.dat", "geosite.dat")
DEFAULT_ASSETS = (GEOIP, GEOSITE)


class AssetProvisioner:
    """确保 v2ray 资源目录中存在 geoip.dat 和 geosite.dat"""

    def __init__(self, asset_dir: Path, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self.asset_dir = Path(asset_dir)
        self.session = session or requests.Session()
        self.timeout = timeout

    def is_present(self, asset: GeoAsset) -> bool:
        return (self.asset_dir / asset.localname).exists()

    def resolve_latest_tag(self, repo: str) -> str:
        """返回 tags 列表中第一个（最新）tag 的名称"""
        try:
            resp = self.session.get(TAGS_URL.format(repo=repo), timeout=self.timeout)
            resp.raise_for_status()
            tag = resp.json()[0]["name"]
        except (requests.RequestException, ValueError, LookupError, TypeError) as e:
            raise AssetDownloadError(f"resolve latest tag of {repo}: {e}") from e
        if not tag:
            raise AssetDownloadError(f"resolve latest tag of {repo}: empty tag name")
        return tag

    @staticmethod
    def download_url(asset: GeoAsset, tag: str) -> str:
        return CDN_URL.format(repo=asset.repo, tag=tag, filename=asset.filename)

    def _download(self, url: str, dest: Path) -> None:
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as resp:
                resp.raise_for_status()
                with open(dest, "wb") as f:
                    for chunk in resp.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
        except (requests.RequestException, OSError) as e:
            dest.unlink(missing_ok=True)
            raise AssetDownloadError(f"download<{dest}>: {e}") from e

    def install(self, asset: GeoAsset) -> Path:
        """下载并安装单个资源，返回最终路径"""
        logger.warning(f"installing {asset.filename}")
        tag = self.resolve_latest_tag(asset.repo)
        url = self.download_url(asset, tag)

        try:
            self.asset_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise AssetDownloadError(f"create {self.asset_dir}: {e}") from e
        tmp_path = self.asset_dir / f"{asset.filename}.download"
        final_path = self.asset_dir / asset.localname
        self._download(url, tmp_path)
        try:
            os.chmod(tmp_path, 0o755)
            os.replace(tmp_path, final_path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise AssetDownloadError(f"install {final_path}: {e}") from e
        logger.info(f"{asset.localname} installed from {url}")
        return final_path

    def provision(self, assets: Iterable[GeoAsset] = DEFAULT_ASSETS) -> Dict[str, Optional[AssetDownloadError]]:
        """安装所有缺失的资源

        Returns:
            {本地文件名: None 表示成功, 否则为对应错误}，已存在的资源不出现在结果中
        """
        results: Dict[str, Optional[AssetDownloadError]] = {}
        for asset in assets:
            if self.is_present(asset):
                continue
            try:
                self.install(asset)
                results[asset.localname] = None
            except AssetDownloadError as e:
                logger.warning(f"provision {asset.repo}: {e}")
                results[asset.localname] = e
        return results
