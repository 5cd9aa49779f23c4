import json
import logging
import threading

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Open live-update sockets keyed by user id, at most one per user.

    Owned by the app (see create_app) and shared by request handlers and the
    /ws route. A newer socket for the same user replaces and closes the older one.
    """

    def __init__(self):
        self._connections = {}
        self._lock = threading.Lock()

    def register(self, user_id, ws):
        with self._lock:
            previous = self._connections.get(user_id)
            self._connections[user_id] = ws
        if previous is not None and previous is not ws:
            logger.info(f"Replacing live connection for user {user_id}")
            _close_quietly(previous)
        logger.info(f"Live connection opened for user {user_id}")

    def unregister(self, user_id, ws):
        with self._lock:
            if self._connections.get(user_id) is not ws:
                return False
            del self._connections[user_id]
        logger.info(f"Live connection closed for user {user_id}")
        return True

    def is_connected(self, user_id):
        with self._lock:
            return user_id in self._connections

    def __len__(self):
        with self._lock:
            return len(self._connections)

    def broadcast(self, user_id, event_type, data):
        """Send one event to the user's socket. Returns False when nobody is
        listening or the send failed; nothing is queued."""
        with self._lock:
            ws = self._connections.get(user_id)
        if ws is None:
            return False
        try:
            ws.send(json.dumps({"type": event_type, "data": data}, default=str))
        except Exception as e:
            logger.warning(f"Dropping live connection for user {user_id}: {e}")
            self.unregister(user_id, ws)
            return False
        return True


def _close_quietly(ws):
    try:
        ws.close()
    except Exception as e:
        logger.debug(f"Closing stale socket failed: {e}")
