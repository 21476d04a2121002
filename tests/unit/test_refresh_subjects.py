#!/usr/bin/env python3
"""Unit tests for the GFWList rule file updater and the release version check

Run: pytest tests/unit/test_refresh_subjects.py -v
"""

from unittest.mock import MagicMock

import pytest
import requests

from errors import RuleListUpdateError, VersionCheckError
from gfwlist import LOCAL_FILENAME, RuleListUpdater
from version_check import check_update, is_newer


def _release_session(tag, payload=b"geosite"):
    session = MagicMock()

    def get(url, **kwargs):
        resp = MagicMock()
        resp.raise_for_status.return_value = None
        if url.endswith("/releases/latest"):
            resp.json.return_value = {"tag_name": tag}
        else:
            resp.__enter__.return_value = resp
            resp.__exit__.return_value = False
            resp.iter_content.return_value = [payload]
        return resp

    session.get.side_effect = get
    return session


class TestRuleListUpdater:
    def test_downloads_when_missing(self, temp_dir):
        session = _release_session("202401010000")
        updater = RuleListUpdater(temp_dir, session=session)

        assert updater.check_and_update() == "202401010000"
        assert (temp_dir / LOCAL_FILENAME).read_bytes() == b"geosite"
        assert updater.local_version() == "202401010000"
        urls = [c.args[0] for c in session.get.call_args_list]
        assert urls[-1].endswith("/releases/download/202401010000/geosite.dat")

    def test_up_to_date_skips_download(self, temp_dir):
        RuleListUpdater(temp_dir, session=_release_session("v1")).check_and_update()
        session = _release_session("v1")

        assert RuleListUpdater(temp_dir, session=session).check_and_update() == "v1"
        assert session.get.call_count == 1

    def test_remote_failure(self, temp_dir):
        session = MagicMock()
        session.get.side_effect = requests.Timeout("slow")
        with pytest.raises(RuleListUpdateError):
            RuleListUpdater(temp_dir, session=session).check_and_update()
        assert not (temp_dir / LOCAL_FILENAME).exists()

    def test_unusable_asset_dir(self, temp_dir):
        blocker = temp_dir / "assets"
        blocker.write_text("not a directory")
        updater = RuleListUpdater(blocker / "v2ray", session=_release_session("v1"))
        with pytest.raises(RuleListUpdateError):
            updater.check_and_update()


class TestVersionCheck:
    @pytest.mark.parametrize("remote,current,expected", [
        ("1.2.0", "1.1.9", True),
        ("v2.0.0", "1.9.9", True),
        ("1.0.0", "1.0.0", False),
        ("1.0.0", "1.0.1", False),
    ])
    def test_is_newer(self, remote, current, expected):
        assert is_newer(remote, current) is expected

    def test_check_update(self):
        found_new, remote = check_update("1.0.0", session=_release_session("v1.5.0"))
        assert (found_new, remote) == (True, "1.5.0")

    def test_check_update_failure(self):
        session = MagicMock()
        session.get.return_value.json.side_effect = ValueError("not json")
        with pytest.raises(VersionCheckError):
            check_update("1.0.0", session=session)
