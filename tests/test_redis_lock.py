"""
Tests for the Redis sweep lock
"""

from unittest.mock import MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError

from app.core.redis_lock import RedisLock


class TestRedisLock:
    """Test cases for RedisLock with a mocked client"""

    def test_acquire_uses_set_nx_ex(self):
        client = MagicMock()
        client.set.return_value = True
        lock = RedisLock(client=client)

        assert lock.acquire("sweep", 600) is True

        args, kwargs = client.set.call_args
        assert args[0] == "sweep"
        assert kwargs == {'nx': True, 'ex': 600}

    def test_acquire_when_held(self):
        client = MagicMock()
        client.set.return_value = None

        assert RedisLock(client=client).acquire("sweep", 600) is False

    def test_acquire_when_redis_down(self):
        client = MagicMock()
        client.set.side_effect = RedisConnectionError("down")
        client.ping.side_effect = RedisConnectionError("down")
        lock = RedisLock(client=client)

        assert lock.acquire("sweep", 600) is False
        assert lock.ping() is False

    def test_release_only_own_token(self):
        client = MagicMock()
        client.set.return_value = True
        lock = RedisLock(client=client)
        lock.acquire("sweep", 600)
        token = client.set.call_args[0][1]

        lock.release("sweep")

        eval_args = client.eval.call_args[0]
        assert eval_args[1:] == (1, "sweep", token)

    def test_release_without_acquire_is_noop(self):
        client = MagicMock()

        RedisLock(client=client).release("sweep")

        client.eval.assert_not_called()
