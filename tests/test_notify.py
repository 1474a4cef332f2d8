"""Tests for completion webhooks."""

import logging
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from notify import build_payload, notify_callback, post_callback  # noqa: E402


class TestBuildPayload:
    """Test build_payload."""

    def test_success(self):
        assert build_payload('op1', 'success') == {'id': 'op1', 'status': 'success'}

    def test_error_included(self):
        assert build_payload('op1', 'failed', 'boom') == {'id': 'op1', 'status': 'failed', 'error': 'boom'}


class TestPostCallback:
    """Test post_callback."""

    def test_posts_json(self):
        with patch('notify.requests.post', return_value=MagicMock(status_code=200)) as mock_post:
            assert post_callback('http://ci/hook', {'id': 'op1'}, timeout=5) is True
        mock_post.assert_called_once_with('http://ci/hook', json={'id': 'op1'}, timeout=5)

    def test_http_error_swallowed(self, caplog):
        caplog.set_level(logging.WARNING)
        with patch('notify.requests.post', return_value=MagicMock(status_code=502)):
            assert post_callback('http://ci/hook', {}) is False
        assert 'Callback notification to http://ci/hook returned HTTP 502' in caplog.text

    def test_connection_error_swallowed(self):
        with patch('notify.requests.post', side_effect=requests.exceptions.ConnectionError('down')):
            assert post_callback('http://ci/hook', {}) is False


class TestNotifyCallback:
    """Test the async wrapper."""

    @pytest.mark.asyncio
    async def test_sends_payload(self):
        with patch('notify.requests.post', return_value=MagicMock(status_code=204)) as mock_post:
            assert await notify_callback('http://ci/hook', 'op1', 'failed', 'boom', timeout=3) is True
        assert mock_post.call_args.kwargs['json'] == {'id': 'op1', 'status': 'failed', 'error': 'boom'}
