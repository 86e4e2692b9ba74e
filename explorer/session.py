# session.py
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Set, Dict, Any, Callable

from .frontier import FrontierManager
from .graph import ExplorationGraph
from .utils import normalize_url

SNAPSHOT_VERSION = 1


@dataclass
class ExploreSession:
    """1回の探索セッションの状態。オーケストレーターだけが変更する"""
    session_id: str
    graph: ExplorationGraph
    frontier: FrontierManager
    seed_url: Optional[str] = None
    described_pages: Set[str] = field(default_factory=set)
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    updated_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @classmethod
    def new(cls, seed_url: Optional[str] = None, dedupe_edges: bool = True,
            normalizer: Callable[[str], str] = normalize_url) -> "ExploreSession":
        return cls(
            session_id=str(uuid.uuid4()),
            graph=ExplorationGraph(normalizer=normalizer, dedupe_edges=dedupe_edges),
            frontier=FrontierManager(normalizer),
            seed_url=seed_url,
        )

    def touch(self):
        self.updated_at = datetime.now().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': SNAPSHOT_VERSION,
            'session_id': self.session_id,
            'seed_url': self.seed_url,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'described_pages': sorted(self.described_pages),
            'graph': self.graph.to_dict(),
            'frontier': self.frontier.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], dedupe_edges: bool = True,
                  normalizer: Callable[[str], str] = normalize_url) -> "ExploreSession":
        return cls(
            session_id=data['session_id'],
            graph=ExplorationGraph.from_dict(data.get('graph', {}), normalizer=normalizer, dedupe_edges=dedupe_edges),
            frontier=FrontierManager.from_dict(data.get('frontier', {}), normalizer=normalizer),
            seed_url=data.get('seed_url'),
            described_pages=set(data.get('described_pages', [])),
            created_at=data.get('created_at', datetime.now().isoformat()),
            updated_at=data.get('updated_at', datetime.now().isoformat()),
        )
