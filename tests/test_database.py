"""
セッション保存のテスト
"""
import json
import pytest
from unittest.mock import Mock, MagicMock, AsyncMock, patch
import sys
import os

# プロジェクトルートをPythonパスに追加
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from agent.protocol import ExploredElement
from explorer.database import JsonSessionStore, Neo4jSessionStore, SessionNotFoundError, create_store
from explorer.models import ParentRef
from explorer.session import ExploreSession
from explorer.snapshots import save_screenshot, to_data_uri, strip_data_uri


def sample_session():
    session = ExploreSession.new(seed_url="https://x/a")
    a = session.graph.upsert_node("https://x/a", "data:image/png;base64,aW1n")
    b = session.graph.upsert_node("https://x/b")
    session.graph.add_edge(a, b, "Login")
    session.frontier.enqueue_discovered("https://x/a", [ExploredElement("Login", "10,20")], ParentRef("https://x/a", a))
    return session


class TestJsonSessionStore:
    """JsonSessionStore のテスト"""

    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path):
        """保存したセッションを復元できる"""
        store = JsonSessionStore(str(tmp_path / "sessions"))
        session = sample_session()
        await store.save(session)

        restored = await store.load(session.session_id)
        assert restored.session_id == session.session_id
        assert len(restored.graph.nodes) == 2
        assert restored.graph.edges[0].label == "Login"
        assert restored.frontier.pending_count() == 1

    @pytest.mark.asyncio
    async def test_load_unknown_session(self, tmp_path):
        store = JsonSessionStore(str(tmp_path))
        with pytest.raises(SessionNotFoundError):
            await store.load("missing")

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path):
        store = JsonSessionStore(str(tmp_path))
        session = sample_session()
        await store.save(session)

        assert await store.delete(session.session_id)
        assert not await store.delete(session.session_id)
        with pytest.raises(SessionNotFoundError):
            await store.load(session.session_id)

    @pytest.mark.asyncio
    async def test_list_sessions(self, tmp_path):
        """最近更新されたセッションから並べる"""
        store = JsonSessionStore(str(tmp_path))
        older, newer = sample_session(), sample_session()
        older.updated_at = "2024-01-01T00:00:00"
        newer.updated_at = "2024-06-01T00:00:00"
        await store.save(older)
        await store.save(newer)
        (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")

        sessions = store.list_sessions()
        assert [s["session_id"] for s in sessions] == [newer.session_id, older.session_id]
        assert sessions[0]["pages"] == 2
        assert sessions[0]["seed_url"] == "https://x/a"


class TestNeo4jSessionStore:
    """Neo4jSessionStore のテスト（ドライバーはモック）"""

    def _store(self, record=None):
        mock_result = Mock()
        mock_result.single = AsyncMock(return_value=record)
        mock_session = Mock()
        mock_session.run = AsyncMock(return_value=mock_result)

        mock_driver = MagicMock()
        mock_driver.session.return_value.__aenter__.return_value = mock_session
        mock_driver.session.return_value.__aexit__.return_value = None
        mock_driver.close = AsyncMock()
        return Neo4jSessionStore("bolt://localhost:7687", "neo4j", "password", driver=mock_driver), mock_session

    @pytest.mark.asyncio
    async def test_save_writes_pages_and_edges(self):
        """スナップショット、Page ノード、NAVIGATES_TO を書き出す"""
        store, mock_session = self._store()
        session = sample_session()
        await store.save(session)

        assert mock_session.run.await_count == 3
        snapshot_call, pages_call, edges_call = mock_session.run.await_args_list
        assert json.loads(snapshot_call.kwargs["snapshot"])["session_id"] == session.session_id
        assert all("screenshot" not in node for node in pages_call.kwargs["nodes"])
        assert "NAVIGATES_TO" in edges_call.args[0]
        assert edges_call.kwargs["edges"][0]["label"] == "Login"

    @pytest.mark.asyncio
    async def test_load(self):
        session = sample_session()
        store, _ = self._store(record={"snapshot": json.dumps(session.to_dict())})
        restored = await store.load(session.session_id)
        assert restored.session_id == session.session_id
        assert len(restored.graph.edges) == 1

    @pytest.mark.asyncio
    async def test_load_unknown_session(self):
        store, _ = self._store(record=None)
        with pytest.raises(SessionNotFoundError):
            await store.load("missing")

    @pytest.mark.asyncio
    async def test_delete_and_close(self):
        store, mock_session = self._store(record={"deleted": 1})
        assert await store.delete("abc")
        assert "DETACH DELETE" in mock_session.run.await_args.args[0]
        await store.close()
        store.driver.close.assert_awaited_once()

    @patch('explorer.database.AsyncGraphDatabase')
    def test_create_store(self, mock_graph_db):
        """設定で保存先を選ぶ"""
        neo4j_store = create_store({
            'store': 'neo4j', 'neo4j_uri': 'bolt://db:7687', 'neo4j_user': 'neo4j', 'neo4j_password': 'pw'
        })
        assert isinstance(neo4j_store, Neo4jSessionStore)
        mock_graph_db.driver.assert_called_once_with('bolt://db:7687', auth=('neo4j', 'pw'))
        assert isinstance(create_store({'session_dir': './sessions'}), JsonSessionStore)


class TestSnapshots:
    """スクリーンショット補助関数のテスト"""

    def test_data_uri(self):
        assert to_data_uri("aW1n") == "data:image/png;base64,aW1n"
        assert to_data_uri("data:image/png;base64,aW1n") == "data:image/png;base64,aW1n"
        assert to_data_uri(None) is None
        assert strip_data_uri("data:image/png;base64,aW1n") == "aW1n"

    def test_save_screenshot(self, tmp_path):
        """<output_dir>/<session_id>/screenshots に保存する"""
        relative = save_screenshot("data:image/png;base64,aW1n", str(tmp_path), "session-1")
        assert relative.startswith(os.path.join("session-1", "screenshots"))
        assert (tmp_path / relative).read_bytes() == b"img"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
