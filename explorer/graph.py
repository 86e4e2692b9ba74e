# graph.py
import logging
import uuid
from dataclasses import asdict
from typing import Callable, Dict, List, Optional, Tuple, Any

from .models import PageNode, NavigationEdge
from .utils import normalize_url

logger = logging.getLogger(__name__)


class ExplorationGraph:
    """発見したページ（ノード）とページ間の遷移（エッジ）を保持する

    ノードの同一性は正規化した URL で決まる。正規化関数は差し替え可能。
    """

    def __init__(self, normalizer: Callable[[str], str] = normalize_url, dedupe_edges: bool = True):
        self.normalizer = normalizer
        self.dedupe_edges = dedupe_edges
        self.nodes: Dict[str, PageNode] = {}
        self.edges: List[NavigationEdge] = []
        self._url_index: Dict[str, str] = {}
        self._edge_keys: Dict[Tuple[str, str, str], str] = {}

    def find_node(self, url: str) -> Optional[PageNode]:
        node_id = self._url_index.get(self.normalizer(url))
        return self.nodes.get(node_id) if node_id else None

    def upsert_node(self, url: str, screenshot: Optional[str] = None) -> str:
        existing = self.find_node(url)
        if existing:
            if screenshot and not existing.screenshot:
                existing.screenshot = screenshot
                logger.debug(f"Backfilled screenshot for {existing.url}")
            return existing.id

        node = PageNode(id=str(uuid.uuid4()), url=url, screenshot=screenshot)
        self.nodes[node.id] = node
        self._url_index[self.normalizer(url)] = node.id
        logger.info(f"New page node: {url}")
        return node.id

    def record_elements(self, node_id: str, element_ids: List[str]):
        node = self.nodes[node_id]
        if not node.discovered_element_ids:
            node.discovered_element_ids = list(element_ids)

    def add_edge(self, source_id: str, target_id: str, label: str) -> str:
        if source_id not in self.nodes or target_id not in self.nodes:
            raise KeyError(f"Unknown node in edge {source_id} -> {target_id}")

        key = (source_id, target_id, label)
        if self.dedupe_edges and key in self._edge_keys:
            return self._edge_keys[key]

        edge = NavigationEdge(id=str(uuid.uuid4()), source_id=source_id, target_id=target_id, label=label)
        self.edges.append(edge)
        self._edge_keys.setdefault(key, edge.id)
        logger.info(f"New edge: {self.nodes[source_id].url} -[{label}]-> {self.nodes[target_id].url}")
        return edge.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'nodes': [asdict(node) for node in self.nodes.values()],
            'edges': [asdict(edge) for edge in self.edges],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], normalizer: Callable[[str], str] = normalize_url,
                  dedupe_edges: bool = True) -> "ExplorationGraph":
        graph = cls(normalizer=normalizer, dedupe_edges=dedupe_edges)
        for raw in data.get('nodes', []):
            node = PageNode(**raw)
            graph.nodes[node.id] = node
            graph._url_index[normalizer(node.url)] = node.id
        for raw in data.get('edges', []):
            edge = NavigationEdge(**raw)
            graph.edges.append(edge)
            graph._edge_keys.setdefault((edge.source_id, edge.target_id, edge.label), edge.id)
        return graph
