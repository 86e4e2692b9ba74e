"""
探索オーケストレーターのテスト
"""
import asyncio
import pytest
from unittest.mock import Mock, AsyncMock
import sys
import os

# プロジェクトルートをPythonパスに追加
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from agent.models import ChunkEvent, RetryEvent, CompleteEvent, ErrorEvent, PreambleKind
from agent.protocol import ExploredElement
from explorer.browser import BrowserDriver, BrowserDriverError
from explorer.database import JsonSessionStore
from explorer.models import ActionResponse, ParentRef, WarningEvent, ExplorationCompleteEvent
from explorer.orchestrator import ExploreOrchestrator, OrchestratorState, TurnInstruction, TurnKind, ERROR_TRANSCRIPT_MESSAGE
from explorer.session import ExploreSession

SCREENSHOT = "aW1n"


class FakeDriver(BrowserDriver):
    """URL を直接設定できるドライバー。links の座標をクリックすると遷移する"""

    def __init__(self, url="https://x/a", links=None):
        self.url = url
        self.links = links or {}
        self.actions = []
        self.cleaned_up = False

    async def initialize(self, start_url=None):
        if start_url:
            self.url = start_url
        return ActionResponse("success", "ready")

    async def current_url(self):
        return self.url

    async def screenshot(self):
        return SCREENSHOT

    async def perform_action(self, action):
        self.actions.append(action)
        if action.action == "click" and action.coordinate in self.links:
            self.url = self.links[action.coordinate]
        return ActionResponse("success", f"{action.action} performed", screenshot=SCREENSHOT)

    async def cleanup(self):
        self.cleaned_up = True


class BrokenDriver(FakeDriver):
    async def current_url(self):
        return None

    async def screenshot(self):
        raise BrowserDriverError("display not ready")


class ScriptedClient:
    """応答を順に返すモデルクライアント。イベントのリストを渡すとそのまま返す"""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    async def stream(self, request):
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, str):
            yield ChunkEvent(response)
            yield CompleteEvent(response, image=request.new_turn.image, usage={"inputTokens": 10, "outputTokens": 5})
        else:
            for event in response:
                yield event

    async def describe_page(self, image):
        return "A page"


class GatedClient:
    """gate が開くまで応答を止めるモデルクライアント"""

    def __init__(self, before=(), after=("done",)):
        self.gate = asyncio.Event()
        self.calls = 0
        self.before = before
        self.after = after

    async def stream(self, request):
        self.calls += 1
        for text in self.before:
            yield ChunkEvent(text)
        await self.gate.wait()
        for text in self.after:
            yield ChunkEvent(text)
        yield CompleteEvent("".join(self.before) + "".join(self.after))


class RaisingClient:
    """ストリームの途中で想定外の例外を投げるモデルクライアント"""

    def __init__(self, error):
        self.error = error

    async def stream(self, request):
        yield ChunkEvent("Hel")
        raise self.error


class CleanupFailingDriver(FakeDriver):
    async def cleanup(self):
        raise BrowserDriverError("Browser cleanup failed: target closed")


def explore_output(*elements):
    body = "".join(
        f"<clickable_element><text>{text}</text><coordinates>{coords}</coordinates>"
        f"<about_this_element>{text} link</about_this_element></clickable_element>"
        for text, coords in elements
    )
    return f"<explore_output>{body}</explore_output><complete_task><result>Listed</result></complete_task>"


DONE = "<complete_task><result>Done</result></complete_task>"


def make_orchestrator(driver, client, **kwargs):
    events = []
    orchestrator = ExploreOrchestrator(driver, client, on_event=events.append, **kwargs)
    return orchestrator, events


class TestExploration:
    """探索の流れのテスト"""

    @pytest.mark.asyncio
    async def test_complete_task_on_empty_graph(self):
        """complete_task だけの応答で1ノード、0エッジのまま Idle に戻る"""
        orchestrator, events = make_orchestrator(FakeDriver("https://x/a"), ScriptedClient([DONE]))

        assert await orchestrator.start("https://x/a")

        graph = orchestrator.session.graph
        assert [node.url for node in graph.nodes.values()] == ["https://x/a"]
        assert graph.edges == []
        assert orchestrator.state == OrchestratorState.IDLE
        assert isinstance(events[-1], ExplorationCompleteEvent)
        assert events[-1].pages == 1

    @pytest.mark.asyncio
    async def test_navigation_creates_one_edge(self):
        """a の Login から b へ遷移すると2ノードと a→b のエッジ1本"""
        driver = FakeDriver("https://x/a", links={"10,20": "https://x/b"})
        client = ScriptedClient([
            explore_output(("Login", "10,20")),
            "<perform_action><action>click</action><coordinate>10,20</coordinate></perform_action>",
            DONE,
            DONE,
        ])
        orchestrator, events = make_orchestrator(driver, client)

        assert await orchestrator.start("https://x/a")

        graph = orchestrator.session.graph
        a = graph.find_node("https://x/a")
        b = graph.find_node("https://x/b")
        assert len(graph.nodes) == 2
        assert len(graph.edges) == 1
        edge = graph.edges[0]
        assert (edge.source_id, edge.target_id, edge.label) == (a.id, b.id, "Login")
        assert len(a.discovered_element_ids) == 1
        assert orchestrator.session.frontier.currently_exploring is None
        assert [action.action for action in driver.actions] == ["click"]

    @pytest.mark.asyncio
    async def test_turn_preambles_and_history(self):
        """指示アクションは新しい会話で始まり、アクション結果は履歴を引き継ぐ"""
        driver = FakeDriver("https://x/a", links={"10,20": "https://x/b"})
        client = ScriptedClient([
            explore_output(("Login", "10,20")),
            "<perform_action><action>click</action><coordinate>10,20</coordinate></perform_action>",
            DONE,
            DONE,
        ])
        orchestrator, _ = make_orchestrator(driver, client)
        await orchestrator.start("https://x/a")

        kinds = [request.preamble.kind for request in client.requests]
        assert kinds == [PreambleKind.EXPLORE, PreambleKind.ACTION, PreambleKind.ACTION, PreambleKind.EXPLORE]

        directed = client.requests[1]
        assert directed.history == []
        assert directed.new_turn.text.startswith("In https://x/a \n Visit Login on coordinate : 10,20")
        assert directed.preamble.current_url == "https://x/a"

        action_result = client.requests[2]
        assert [entry.role for entry in action_result.history] == ["user", "model"]
        assert "<action_status>success</action_status>" in action_result.new_turn.text
        assert action_result.new_turn.image == SCREENSHOT

        assert client.requests[3].history == []
        assert client.requests[3].new_turn.text == "Explore https://x/b"

    @pytest.mark.asyncio
    async def test_breadth_first_order(self):
        """先に見つけたページの要素から順に指示する"""
        driver = FakeDriver("https://x/a")
        client = ScriptedClient([
            explore_output(("One", "1,1"), ("Two", "2,2")),
            DONE,
            DONE,
        ])
        orchestrator, _ = make_orchestrator(driver, client)
        assert await orchestrator.start("https://x/a")

        texts = [request.new_turn.text for request in client.requests[1:]]
        assert "Visit One" in texts[0]
        assert "Visit Two" in texts[1]
        # 遷移しなかったのでエッジは増えない
        assert orchestrator.session.graph.edges == []

    @pytest.mark.asyncio
    async def test_dropped_elements_surface_warning(self):
        """座標のない要素は登録されず警告になる"""
        client = ScriptedClient([
            "<explore_output><clickable_element><text>Icon</text></clickable_element></explore_output>" + DONE,
        ])
        orchestrator, events = make_orchestrator(FakeDriver(), client)
        assert await orchestrator.start()

        assert orchestrator.session.frontier.pending_count() == 0
        warnings = [e.message for e in events if isinstance(e, WarningEvent)]
        assert any("had no text or coordinates" in message for message in warnings)

    @pytest.mark.asyncio
    async def test_filler_turns_are_bounded(self):
        """アクションのない応答が続くと要素をあきらめて次へ進む"""
        client = ScriptedClient([
            explore_output(("Login", "10,20")),
            "Let me think about it.",
            "<ask_followup_question><question>Which account?</question></ask_followup_question>",
            "Still thinking.",
        ])
        orchestrator, events = make_orchestrator(FakeDriver(), client, config={"filler_turn_limit": 2})

        assert await orchestrator.start()

        assert len(client.requests) == 4
        assert "No human is available" in client.requests[2].new_turn.text
        assert any("Giving up on 'Login'" in e.message for e in events if isinstance(e, WarningEvent))

    @pytest.mark.asyncio
    async def test_turn_limit_moves_to_next_item(self):
        """1要素あたりのターン上限に達すると警告して次の要素へ進む"""
        wait = "<perform_action><action>wait</action></perform_action>"
        client = ScriptedClient([
            explore_output(("Login", "10,20"), ("Help", "30,40")),
            wait,
            wait,
            DONE,
        ])
        orchestrator, events = make_orchestrator(FakeDriver(), client, config={"max_turns_per_item": 2})

        assert await orchestrator.start()

        assert len(client.requests) == 4
        warnings = [e.message for e in events if isinstance(e, WarningEvent)]
        assert any("Giving up on 'Login'" in message for message in warnings)
        assert "Visit Help" in client.requests[3].new_turn.text
        assert client.requests[3].history == []
        assert orchestrator.session.frontier.currently_exploring is None

    @pytest.mark.asyncio
    async def test_same_domain_only(self):
        """外部ドメインのページは記録しない"""
        driver = FakeDriver("https://x/a", links={"10,20": "https://other/b"})
        client = ScriptedClient([
            explore_output(("External", "10,20")),
            "<perform_action><action>click</action><coordinate>10,20</coordinate></perform_action>",
            DONE,
            DONE,
        ])
        orchestrator, events = make_orchestrator(driver, client, config={"same_domain_only": True})
        assert await orchestrator.start("https://x/a")

        assert len(orchestrator.session.graph.nodes) == 1
        assert orchestrator.session.graph.edges == []
        # 外部ページでは探索ターンを行わない
        assert len(client.requests) == 3
        assert all(request.new_turn.text != "Explore https://other/b" for request in client.requests)
        assert any("Skipping page outside" in e.message for e in events if isinstance(e, WarningEvent))

    @pytest.mark.asyncio
    async def test_describe_pages(self):
        """ページの説明を一度だけ生成してノードに保存する"""
        client = ScriptedClient([DONE])
        orchestrator, _ = make_orchestrator(FakeDriver(), client, config={"describe_pages": True})
        await orchestrator.start()

        node = orchestrator.session.graph.find_node("https://x/a")
        assert node.description == "A page"
        assert node.screenshot == f"data:image/png;base64,{SCREENSHOT}"
        assert orchestrator.session.described_pages == {"https://x/a"}

    @pytest.mark.asyncio
    async def test_usage_is_summed(self):
        """トークン使用量を合計する"""
        client = ScriptedClient([explore_output(("Login", "10,20")), DONE])
        orchestrator, _ = make_orchestrator(FakeDriver(), client)
        await orchestrator.start()
        assert orchestrator.usage["inputTokens"] == 20
        assert orchestrator.usage["outputTokens"] == 10


class TestFailures:
    """エラー時の振る舞いのテスト"""

    @pytest.mark.asyncio
    async def test_driver_without_url(self):
        """URL が取れなければグラフを変更せず警告する"""
        orchestrator, events = make_orchestrator(BrokenDriver(), ScriptedClient([DONE]))

        assert await orchestrator.start()

        assert orchestrator.session.graph.nodes == {}
        assert orchestrator.driver_failures >= 2
        assert any(isinstance(e, WarningEvent) for e in events)

    @pytest.mark.asyncio
    async def test_error_event_ends_session(self):
        """ErrorEvent はそのまま1つだけ通知される"""
        client = ScriptedClient([[ChunkEvent("Hel"), ErrorEvent("Error processing message. Please try again later.")]])
        orchestrator, events = make_orchestrator(FakeDriver(), client)

        assert not await orchestrator.start()

        assert len([e for e in events if isinstance(e, ErrorEvent)]) == 1
        assert orchestrator.error.startswith("Error processing message")
        assert not any(message.is_partial for message in orchestrator.messages)
        assert orchestrator.state == OrchestratorState.IDLE

    @pytest.mark.asyncio
    async def test_retry_discards_partial_text(self):
        """RetryEvent で失敗した試行の途中テキストを捨てる"""
        client = ScriptedClient([[
            ChunkEvent("garbage"),
            RetryEvent(attempt=1, reason="throttled"),
            ChunkEvent(DONE),
            CompleteEvent(DONE),
        ]])
        orchestrator, _ = make_orchestrator(FakeDriver(), client)
        outcome = await orchestrator.start_turn(TurnInstruction(TurnKind.EXPLORE, "Explore https://x/a"))

        assert outcome.text == DONE
        model_messages = [m for m in orchestrator.messages if not m.is_user]
        assert len(model_messages) == 1
        assert model_messages[0].text == DONE
        assert not model_messages[0].is_partial

    @pytest.mark.asyncio
    async def test_timeout_aborts_session(self):
        """一定時間データが届かなければセッションを中止する"""
        client = GatedClient()
        orchestrator, events = make_orchestrator(FakeDriver(), client, config={"stream_timeout": 0.05})

        assert not await orchestrator.start()

        errors = [e for e in events if isinstance(e, ErrorEvent)]
        assert [e.message for e in errors] == ["Connection timeout - no response received"]
        assert not orchestrator.is_processing

    @pytest.mark.asyncio
    async def test_snapshot_failure_is_not_fatal(self):
        """スナップショットの保存に失敗しても探索は続く"""
        store = Mock()
        store.save = AsyncMock(side_effect=OSError("disk full"))
        client = ScriptedClient([explore_output(("Login", "10,20")), DONE])
        orchestrator, _ = make_orchestrator(FakeDriver(), client, store=store)

        assert await orchestrator.start()

        assert store.save.await_count > 0
        assert len(orchestrator.session.graph.nodes) == 1

    @pytest.mark.asyncio
    async def test_unexpected_stream_exception_ends_session(self):
        """ストリームの想定外の例外は ErrorEvent 1つになり、例外は外へ出ない"""
        orchestrator, events = make_orchestrator(FakeDriver(), RaisingClient(RuntimeError("boom")))

        assert not await orchestrator.start()

        errors = [e for e in events if isinstance(e, ErrorEvent)]
        assert len(errors) == 1
        assert "boom" in errors[0].message
        assert orchestrator.messages[-1].text == ERROR_TRANSCRIPT_MESSAGE
        assert not orchestrator.is_processing
        assert orchestrator.state == OrchestratorState.IDLE

    @pytest.mark.asyncio
    async def test_driver_cleanup_failure_is_not_raised(self):
        """ドライバーの片付けに失敗しても close は例外を出さない"""
        driver = CleanupFailingDriver()
        async with ExploreOrchestrator(driver, ScriptedClient([DONE])) as orchestrator:
            assert await orchestrator.start()
        await orchestrator.close()


class TestSessionControl:
    """受付制御、停止、再開のテスト"""

    @pytest.mark.asyncio
    async def test_second_start_turn_is_ignored(self):
        """ターンの途中で start_turn しても2つ目のモデル呼び出しは発生しない"""
        client = GatedClient()
        orchestrator, _ = make_orchestrator(FakeDriver(), client)
        instruction = TurnInstruction(TurnKind.EXPLORE, "Explore https://x/a")

        first = asyncio.create_task(orchestrator.start_turn(instruction))
        while client.calls == 0:
            await asyncio.sleep(0)

        assert await orchestrator.start_turn(instruction) is None
        assert client.calls == 1

        client.gate.set()
        outcome = await first
        assert outcome.text == "done"
        assert not orchestrator.is_processing

    @pytest.mark.asyncio
    async def test_stop_suppresses_later_chunks(self):
        """停止後のチャンクは配信せず、途中のメッセージを確定する"""
        client = GatedClient(before=("Hello",), after=(" more",))
        orchestrator, events = make_orchestrator(FakeDriver(), client)

        turn = asyncio.create_task(orchestrator.start_turn(TurnInstruction(TurnKind.EXPLORE, "Explore")))
        while not any(isinstance(e, ChunkEvent) for e in events):
            await asyncio.sleep(0)

        assert orchestrator.stop()
        client.gate.set()
        assert await turn is None

        assert [e.text for e in events if isinstance(e, ChunkEvent)] == ["Hello"]
        assert orchestrator.messages[-1].text == "Hello"
        assert not orchestrator.messages[-1].is_partial
        assert not orchestrator.is_processing
        assert orchestrator.state == OrchestratorState.IDLE

    @pytest.mark.asyncio
    async def test_stop_during_stalled_stream(self):
        """応答が止まったまま停止しても、後のタイムアウトはエラーにならない"""
        client = GatedClient(before=("Hello",))
        orchestrator, events = make_orchestrator(FakeDriver(), client, config={"stream_timeout": 0.1})

        turn = asyncio.create_task(orchestrator.start_turn(TurnInstruction(TurnKind.EXPLORE, "Explore")))
        while not any(isinstance(e, ChunkEvent) for e in events):
            await asyncio.sleep(0)

        assert orchestrator.stop()
        assert await turn is None

        assert not any(isinstance(e, ErrorEvent) for e in events)
        assert orchestrator.error is None
        assert all(message.text != ERROR_TRANSCRIPT_MESSAGE for message in orchestrator.messages)
        assert orchestrator.messages[-1].text == "Hello"
        assert not orchestrator.is_processing

    @pytest.mark.asyncio
    async def test_resume_requeues_in_flight_item(self, tmp_path):
        """再開すると中断していた要素から続ける"""
        session = ExploreSession.new(seed_url="https://x/a")
        node_id = session.graph.upsert_node("https://x/a")
        session.frontier.enqueue_discovered("https://x/a", [
            ExploredElement("Login", "10,20", "login button"),
            ExploredElement("Help", "30,40"),
        ], ParentRef(url="https://x/a", node_id=node_id))
        session.frontier.mark_currently_exploring(session.frontier.dequeue_next())
        store = JsonSessionStore(str(tmp_path))
        await store.save(session)

        client = ScriptedClient([DONE, DONE])
        orchestrator, _ = make_orchestrator(FakeDriver("https://x/a"), client, store=store)
        await orchestrator.resume(session.session_id)

        assert await orchestrator.start()

        texts = [request.new_turn.text for request in client.requests]
        assert "Visit Login on coordinate : 10,20 with about this element : login button" in texts[0]
        assert "Visit Help" in texts[1]
        saved = await store.load(session.session_id)
        assert saved.frontier.pending_count() == 0
        assert saved.frontier.currently_exploring is None

    @pytest.mark.asyncio
    async def test_clear_starts_new_session(self, tmp_path):
        """clear は保存済みのセッションを消して新しいセッションにする"""
        store = JsonSessionStore(str(tmp_path))
        orchestrator, _ = make_orchestrator(FakeDriver(), ScriptedClient([DONE]), store=store)
        await orchestrator.start()
        old_id = orchestrator.session.session_id
        assert store.list_sessions()[0]["session_id"] == old_id

        await orchestrator.clear()

        assert orchestrator.session.session_id != old_id
        assert store.list_sessions() == []

    @pytest.mark.asyncio
    async def test_context_manager_cleans_up_driver(self):
        """コンテキストを抜けるとドライバーを片付ける"""
        driver = FakeDriver()
        async with ExploreOrchestrator(driver, ScriptedClient([])):
            pass
        assert driver.cleaned_up


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
