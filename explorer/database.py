# database.py
import json
import logging
import os
from pathlib import Path
from typing import Dict, Any, List, Optional

from neo4j import AsyncGraphDatabase

from .session import ExploreSession

logger = logging.getLogger(__name__)


class SessionNotFoundError(KeyError):
    pass


class JsonSessionStore:
    """セッションごとに1つの JSON ファイルへスナップショットを保存する"""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def _path(self, session_id: str) -> Path:
        return self.directory / f"{session_id}.json"

    async def save(self, session: ExploreSession):
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(session.session_id)
        tmp_path = path.with_suffix('.json.tmp')
        tmp_path.write_text(json.dumps(session.to_dict(), ensure_ascii=False), encoding='utf-8')
        os.replace(tmp_path, path)

    async def load(self, session_id: str) -> ExploreSession:
        path = self._path(session_id)
        if not path.exists():
            raise SessionNotFoundError(session_id)
        return ExploreSession.from_dict(json.loads(path.read_text(encoding='utf-8')))

    async def delete(self, session_id: str) -> bool:
        path = self._path(session_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def list_sessions(self) -> List[Dict[str, Any]]:
        """最近更新された順にセッションのメタ情報を返す"""
        sessions = []
        for path in self.directory.glob('*.json'):
            try:
                data = json.loads(path.read_text(encoding='utf-8'))
            except ValueError as e:
                logger.warning(f"Skipping unreadable session file {path}: {e}")
                continue
            sessions.append({
                'session_id': data['session_id'],
                'seed_url': data.get('seed_url'),
                'updated_at': data.get('updated_at', ''),
                'pages': len(data.get('graph', {}).get('nodes', [])),
            })
        return sorted(sessions, key=lambda s: s['updated_at'], reverse=True)

    async def close(self):
        pass


class Neo4jSessionStore:
    """Neo4j にセッションを保存する

    復元用の JSON スナップショットを ExploreSession ノードに持たせ、
    ページを Page ノード、遷移を NAVIGATES_TO リレーションとして書き出す。
    """

    def __init__(self, uri: str, user: str, password: str, driver=None):
        self.driver = driver if driver is not None else AsyncGraphDatabase.driver(uri, auth=(user, password))

    async def initialize(self):
        async with self.driver.session() as session:
            await session.run("CREATE CONSTRAINT explore_session_id IF NOT EXISTS FOR (s:ExploreSession) REQUIRE s.session_id IS UNIQUE")
            await session.run("CREATE INDEX page_node_id IF NOT EXISTS FOR (p:Page) ON (p.node_id)")
            logger.info("Constraints and indexes created for ExploreSession/Page")

    async def save(self, explore_session: ExploreSession):
        snapshot = explore_session.to_dict()
        graph = snapshot['graph']
        async with self.driver.session() as session:
            await session.run(
                """
                MERGE (s:ExploreSession {session_id: $session_id})
                SET s.seed_url = $seed_url, s.updated_at = $updated_at, s.snapshot = $snapshot
                """,
                session_id=explore_session.session_id,
                seed_url=explore_session.seed_url,
                updated_at=explore_session.updated_at,
                snapshot=json.dumps(snapshot, ensure_ascii=False),
            )
            await session.run(
                """
                MATCH (s:ExploreSession {session_id: $session_id})
                UNWIND $nodes AS node
                MERGE (p:Page {node_id: node.id})
                SET p.page_url = node.url, p.session_id = $session_id,
                    p.description = node.description, p.element_ids = node.discovered_element_ids
                MERGE (s)-[:CONTAINS]->(p)
                """,
                session_id=explore_session.session_id,
                nodes=[{k: v for k, v in node.items() if k != 'screenshot'} for node in graph['nodes']],
            )
            await session.run(
                """
                UNWIND $edges AS edge
                MATCH (a:Page {node_id: edge.source_id})
                MATCH (b:Page {node_id: edge.target_id})
                MERGE (a)-[r:NAVIGATES_TO {edge_id: edge.id}]->(b)
                SET r.label = edge.label
                """,
                edges=graph['edges'],
            )

    async def load(self, session_id: str) -> ExploreSession:
        async with self.driver.session() as session:
            result = await session.run(
                "MATCH (s:ExploreSession {session_id: $session_id}) RETURN s.snapshot AS snapshot",
                session_id=session_id,
            )
            record = await result.single()
        if not record or not record['snapshot']:
            raise SessionNotFoundError(session_id)
        return ExploreSession.from_dict(json.loads(record['snapshot']))

    async def delete(self, session_id: str) -> bool:
        async with self.driver.session() as session:
            result = await session.run(
                """
                MATCH (s:ExploreSession {session_id: $session_id})
                OPTIONAL MATCH (s)-[:CONTAINS]->(p:Page)
                DETACH DELETE s, p
                RETURN count(s) AS deleted
                """,
                session_id=session_id,
            )
            record = await result.single()
        return bool(record and record['deleted'])

    async def close(self):
        await self.driver.close()


def create_store(config: Dict[str, Any]):
    if config.get('store') == 'neo4j':
        return Neo4jSessionStore(config['neo4j_uri'], config['neo4j_user'], config['neo4j_password'])
    return JsonSessionStore(config['session_dir'])
