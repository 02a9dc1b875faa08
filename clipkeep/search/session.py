# Purpose: the visible search state of one UI surface
# every search gets a new, increasing request id; a result (or error) is applied
# only if its id is still the latest one, results of superseded searches are dropped
# in-flight storage calls are not cancelled, their results are just ignored

import itertools
import threading
from dataclasses import dataclass, field
from concurrent.futures import Future
from typing import List, Optional

from loguru import logger

from clipkeep.core import config
from clipkeep.db.models import ClipboardItem, ItemType
from clipkeep.search.history import ClipboardHistoryService


@dataclass
class SearchState:
    query: str = ""
    filter_type: Optional[ItemType] = None
    items: List[ClipboardItem] = field(default_factory=list)
    is_loading: bool = False
    error_message: Optional[str] = None


class SearchSession:
    def __init__(self, history: ClipboardHistoryService, limit: int = config.search_limit):
        self.history = history
        self.limit = limit
        self.state = SearchState()
        self._lock = threading.Lock()
        self._request_ids = itertools.count(1)
        self.active_request_id = 0

    def search(self, query: Optional[str] = None, filter_type: Optional[ItemType] = None) -> int:
        """Start a search, returns its request id"""
        with self._lock:
            request_id = next(self._request_ids)
            self.active_request_id = request_id
            if query is not None:
                self.state.query = query
            self.state.filter_type = filter_type
            self.state.is_loading = True
            self.state.error_message = None
            effective_query = self.state.query

        future = self.history.search(effective_query, self.limit, filter_type)
        future.add_done_callback(lambda f: self._apply(request_id, f))
        return request_id

    def _apply(self, request_id: int, future: Future):
        with self._lock:
            if request_id != self.active_request_id:
                return

            self.state.is_loading = False
            if future.cancelled():
                return
            error = future.exception()
            if error is not None:
                logger.error(f"[SEARCH] Search failed: {error}")
                self.state.error_message = str(error)
                return

            self.state.items = future.result()
