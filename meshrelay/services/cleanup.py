# services/cleanup.py
import logging

from meshrelay.services.messaging import fan_out

logger = logging.getLogger(__name__)


class CleanupSupervisor:
    """
    Releases everything a dropped connection held.

    Removes the connection from every room (member or pending), vacates the
    host slot when it was the host, tells the remaining members that it left,
    and lets the registry dissolve rooms that end up empty.
    """

    def __init__(self, registry, connections, rate_limiter=None):
        self.registry = registry
        self.connections = connections
        self.rate_limiter = rate_limiter

    async def handle_disconnect(self, connection_id: str):
        """
        React to a closed connection.

        Args:
            connection_id (str): Id of the connection that went away.

        Returns:
            List[LeaveResult]: What was released, one entry per room.
        """
        conn = self.connections.unregister(connection_id)
        results = await self.registry.leave(connection_id)

        for result in results:
            logger.info(
                f"{connection_id} left room {result.room_id} "
                f"(host={result.was_host}, pending={result.was_pending}, dissolved={result.dissolved})")
            if result.remaining:
                await fan_out(self.connections, result.remaining, "user-left",
                              {"id": connection_id, "name": result.name})

        if conn is not None and self.rate_limiter is not None:
            ip = conn.ip
            if ip is not None and not self.rate_limiter.is_banned(ip):
                self.rate_limiter.forget(ip)
        return results
