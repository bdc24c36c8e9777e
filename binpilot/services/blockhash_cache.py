"""
Blockhash cache for transactions built locally (bundle tips, WSOL unwrap).

Callers ask for a blockhash no older than a given age; a stale entry is
refreshed inline with one getLatestBlockhash call. The chain invalidates the
entry when a send is rejected for an expired blockhash. An optional
background thread keeps the entry warm during long monitoring sessions.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import requests

logger = logging.getLogger("binpilot.blockhash_cache")


@dataclass(frozen=True)
class CachedBlockhash:
    blockhash: str
    last_valid_block_height: int
    fetched_at: float


class BlockhashCache:
    """Thread-safe latest-blockhash holder."""

    def __init__(self, rpc_url: str, refresh_interval_ms: int = 2000, session=None,
                 clock: Callable[[], float] = time.time):
        self.rpc_url = rpc_url
        self.refresh_interval = refresh_interval_ms / 1000.0
        self.session = session or requests
        self.clock = clock

        self._entry: Optional[CachedBlockhash] = None
        self._lock = threading.Lock()
        self._fetch_count = 0

        self._running = False
        self._thread: Optional[threading.Thread] = None

    def start(self):
        """Start the background refresh thread."""
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._refresh_loop, daemon=True, name="blockhash-cache")
        self._thread.start()
        logger.info(f"[Blockhash] Background refresh every {self.refresh_interval:.1f}s")

    def stop(self):
        self._running = False
        if self._thread:
            self._thread.join(timeout=2)
            self._thread = None

    def invalidate(self):
        with self._lock:
            self._entry = None

    def get_fresh_blockhash(self, max_age_ms: int = 1000) -> Tuple[str, int]:
        """
        (blockhash, last_valid_block_height), refetched when older than `max_age_ms`.

        Raises requests.RequestException or ValueError when the RPC cannot
        supply one.
        """
        with self._lock:
            entry = self._entry
            if entry is None or (self.clock() - entry.fetched_at) * 1000 > max_age_ms:
                entry = self._fetch()
                self._entry = entry
            return entry.blockhash, entry.last_valid_block_height

    def get_stats(self) -> dict:
        with self._lock:
            entry = self._entry
            return {
                "blockhash": entry.blockhash[:8] + "..." if entry else None,
                "last_valid_block_height": entry.last_valid_block_height if entry else 0,
                "age_ms": int((self.clock() - entry.fetched_at) * 1000) if entry else None,
                "fetch_count": self._fetch_count,
            }

    def _refresh_loop(self):
        while self._running:
            try:
                entry = self._fetch()
            except (requests.RequestException, ValueError) as e:
                logger.debug(f"[Blockhash] Background refresh failed: {e}")
            else:
                with self._lock:
                    self._entry = entry
            time.sleep(self.refresh_interval)

    def _fetch(self) -> CachedBlockhash:
        response = self.session.post(self.rpc_url, json={
            "jsonrpc": "2.0",
            "id": 1,
            "method": "getLatestBlockhash",
            "params": [{"commitment": "confirmed"}]
        }, timeout=5)
        response.raise_for_status()
        value = (response.json().get("result") or {}).get("value") or {}
        if not value.get("blockhash"):
            raise ValueError("getLatestBlockhash returned no blockhash")
        self._fetch_count += 1
        return CachedBlockhash(
            blockhash=value["blockhash"],
            last_valid_block_height=int(value.get("lastValidBlockHeight") or 0),
            fetched_at=self.clock(),
        )
