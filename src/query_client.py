# Copyright (c) 2025 Stephen Clau
#
# This file is part of Query Presence.
#
# Query Presence is dual-licensed:
#
# 1. GNU Affero General Public License v3.0 (AGPL-3.0)
#    See LICENSE file for full terms
#
# 2. Commercial License
#    For proprietary use without AGPL requirements
#    Contact: licensing@laudiversified.com
#
# SPDX-License-Identifier: AGPL-3.0-only OR Commercial


"""
UDP query client for game server status.

One call to query() performs a full handshake + status exchange over a fresh
datagram socket and returns a Snapshot, or None when the server is
unreachable. Timeouts, socket errors and malformed replies all collapse to
None; nothing is retried.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Tuple, Union

import structlog

try:
    from .query_protocol import (  # type: ignore
        DecodeError,
        Snapshot,
        decode_handshake_response,
        decode_status_response,
        encode_handshake_request,
        encode_status_request,
        parse_token,
        strip_terminator,
    )
except ImportError:
    from query_protocol import (  # type: ignore
        DecodeError,
        Snapshot,
        decode_handshake_response,
        decode_status_response,
        encode_handshake_request,
        encode_status_request,
        parse_token,
        strip_terminator,
    )

logger = structlog.get_logger()

DEFAULT_QUERY_TIMEOUT = 2.0

# Request ids used by the application
POLL_REQUEST_ID = 1
COMMAND_REQUEST_ID = 2
STARTUP_REQUEST_ID = 3


class TransportError(Exception):
    """Socket-level failure during a query exchange."""


class _QueryProtocol(asyncio.DatagramProtocol):
    """Queue every datagram (or socket error) for the awaiting exchange."""

    def __init__(self) -> None:
        self.responses: asyncio.Queue[Union[bytes, Exception]] = asyncio.Queue()
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.responses.put_nowait(data)

    def error_received(self, exc: Exception) -> None:
        # ICMP port unreachable lands here as ConnectionRefusedError
        self.responses.put_nowait(exc)


class QueryClient:
    """Query one remote game server over UDP."""

    def __init__(
        self,
        host: str,
        port: int,
        timeout: float = DEFAULT_QUERY_TIMEOUT,
    ) -> None:
        """
        Initialize query client.

        Args:
            host: Remote server host name or address
            port: Remote query port
            timeout: Deadline in seconds for the whole exchange
        """
        self.host = host
        self.port = port
        self.timeout = timeout

    async def query(self, request_id: int = POLL_REQUEST_ID) -> Optional[Snapshot]:
        """
        Run one handshake + status exchange.

        Args:
            request_id: Session id sent in both requests

        Returns:
            Decoded Snapshot, or None if the server is unreachable
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        transport: Optional[asyncio.DatagramTransport] = None

        try:
            transport, protocol = await asyncio.wait_for(
                loop.create_datagram_endpoint(
                    _QueryProtocol,
                    remote_addr=(self.host, self.port),
                ),
                timeout=self._remaining(loop, deadline),
            )

            transport.sendto(encode_handshake_request(request_id))
            handshake = decode_handshake_response(
                await self._receive(protocol, loop, deadline)
            )
            token = parse_token(handshake.token)

            transport.sendto(encode_status_request(request_id, token))
            raw = await self._receive(protocol, loop, deadline)
            snapshot = decode_status_response(
                strip_terminator(raw), expected_id=request_id
            )

            logger.debug(
                "query_succeeded",
                host=self.host,
                port=self.port,
                request_id=request_id,
                players=len(snapshot.players),
            )
            return snapshot
        except asyncio.TimeoutError:
            logger.warning(
                "query_timeout",
                host=self.host,
                port=self.port,
                timeout=self.timeout,
            )
        except DecodeError as e:
            logger.warning(
                "query_decode_failed",
                host=self.host,
                port=self.port,
                error=str(e),
            )
        except (TransportError, OSError) as e:
            logger.warning(
                "query_transport_failed",
                host=self.host,
                port=self.port,
                error=str(e),
            )
        finally:
            if transport is not None:
                transport.close()

        return None

    @staticmethod
    def _remaining(loop: asyncio.AbstractEventLoop, deadline: float) -> float:
        return max(0.0, deadline - loop.time())

    async def _receive(
        self,
        protocol: _QueryProtocol,
        loop: asyncio.AbstractEventLoop,
        deadline: float,
    ) -> bytes:
        """Await exactly one reply within what is left of the deadline."""
        item = await asyncio.wait_for(
            protocol.responses.get(),
            timeout=self._remaining(loop, deadline),
        )
        if isinstance(item, Exception):
            raise TransportError(f"{type(item).__name__}: {item}") from item
        return item
