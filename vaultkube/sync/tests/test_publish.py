"""Tests for run summary publication to Redis Streams."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest

from vaultkube.config import RedisConfig
from vaultkube.sync import publish

CONFIG = RedisConfig(url="redis://localhost:6379/0", stream="test:sync", maxlen=50)


@pytest.fixture
def mock_redis():
    r = MagicMock()
    r.xadd.return_value = "1-0"
    publish.set_redis_client(r)
    yield r
    publish.reset_client()


class TestPublishSummary:
    def test_disabled_without_url(self, mock_redis):
        assert publish.publish_summary({"status": "SUCCESS"}, RedisConfig()) is None
        mock_redis.xadd.assert_not_called()

    def test_envelope(self, mock_redis):
        msg_id = publish.publish_summary({"status": "PARTIAL", "created": 2}, CONFIG)
        assert msg_id == "1-0"
        stream, envelope = mock_redis.xadd.call_args[0]
        assert stream == "test:sync"
        assert envelope["type"] == "sync.completed"
        assert envelope["status"] == "PARTIAL"
        assert json.loads(envelope["payload"])["created"] == 2
        assert mock_redis.xadd.call_args.kwargs == {"maxlen": 50, "approximate": True}

    def test_failure_is_swallowed(self, mock_redis, caplog):
        mock_redis.xadd.side_effect = ConnectionError("redis down")
        assert publish.publish_summary({"status": "FAILED"}, CONFIG) is None
        assert "redis down" in caplog.text
