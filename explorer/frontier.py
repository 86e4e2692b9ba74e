# frontier.py
import logging
import uuid
from collections import deque
from dataclasses import asdict
from typing import Callable, Deque, Dict, Iterable, List, Optional, Any

from agent.protocol import ExploredElement
from .models import FrontierItem, ElementDescriptor, ParentRef
from .utils import normalize_url

logger = logging.getLogger(__name__)


class FrontierManager:
    """ルート（ページ）ごとの未訪問要素キューと、探索中の要素を管理する

    取り出しはルート間で幅優先: 訪問順で最も古い空でないルートから、そのルートの
    最も古い要素を取り出す。
    """

    def __init__(self, normalizer: Callable[[str], str] = normalize_url):
        self.normalizer = normalizer
        self.visited_routes: List[str] = []
        self.queues: Dict[str, Deque[FrontierItem]] = {}
        self.currently_exploring: Optional[FrontierItem] = None
        self.dropped: List[ExploredElement] = []

    def is_visited(self, url: str) -> bool:
        return self.normalizer(url) in self.queues

    def enqueue_discovered(self, url: str, elements: Iterable[ExploredElement], parent: ParentRef) -> List[FrontierItem]:
        route = self.normalizer(url)
        if route in self.queues:
            raise ValueError(f"Route already discovered: {url}")

        self.visited_routes.append(route)
        queue: Deque[FrontierItem] = deque()
        self.queues[route] = queue

        for element in elements:
            if not element.text or not element.coordinates:
                # 文字列か座標がない要素は操作できない
                logger.warning(f"Dropped element without text or coordinates on {url}: {element}")
                self.dropped.append(element)
                continue
            queue.append(FrontierItem(
                id=str(uuid.uuid4()),
                url=url,
                element=ElementDescriptor(element.text, element.coordinates, element.about or ""),
                parent=parent,
            ))

        logger.info(f"Enqueued {len(queue)} elements for {url}")
        return list(queue)

    def dequeue_next(self) -> Optional[FrontierItem]:
        for route in self.visited_routes:
            queue = self.queues[route]
            if queue:
                return queue.popleft()
        return None

    def requeue_front(self, item: FrontierItem):
        """中断された要素を元のルートの先頭へ戻す"""
        route = self.normalizer(item.url)
        if route not in self.queues:
            self.visited_routes.append(route)
            self.queues[route] = deque()
        self.queues[route].appendleft(item)

    def mark_currently_exploring(self, item: FrontierItem):
        self.currently_exploring = item

    def clear_currently_exploring(self):
        self.currently_exploring = None

    def pending_count(self) -> int:
        return sum(len(queue) for queue in self.queues.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'visited_routes': list(self.visited_routes),
            'queues': {route: [asdict(item) for item in queue] for route, queue in self.queues.items()},
            'currently_exploring': asdict(self.currently_exploring) if self.currently_exploring else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], normalizer: Callable[[str], str] = normalize_url) -> "FrontierManager":
        frontier = cls(normalizer=normalizer)
        frontier.visited_routes = list(data.get('visited_routes', []))
        for route in frontier.visited_routes:
            frontier.queues[route] = deque(
                _item_from_dict(raw) for raw in data.get('queues', {}).get(route, [])
            )
        if data.get('currently_exploring'):
            frontier.currently_exploring = _item_from_dict(data['currently_exploring'])
        return frontier


def _item_from_dict(raw: Dict[str, Any]) -> FrontierItem:
    return FrontierItem(
        id=raw['id'],
        url=raw['url'],
        element=ElementDescriptor(**raw['element']),
        parent=ParentRef(**raw['parent']),
    )
