"""
探索オーケストレーター

モデルへの問い合わせと、その指示のブラウザ上での実行を交互に繰り返して
Web アプリケーションを探索する状態機械。

状態: Idle -> AwaitingModelTurn -> (ProcessingExploreTurn | ProcessingActionTurn) -> (AwaitingModelTurn | Idle)

- 探索ターン: 現在のページを記録（ノード、探索中要素の親ノードからのエッジ、要素のフロンティア登録）し、
  次のフロンティア要素を取り出す
- アクションターン: perform_action を実行して結果を次のターンで返す。complete_task で指示が完了したら
  新しいページなら探索ターン、そうでなければ次のフロンティア要素へ進む
- フロンティアが尽きたら Idle に戻り探索完了を通知する

モデルターンは同時に1つだけ（is_processing による受付制御）。グラフ、フロンティア、
セッションはこのクラスだけが変更する。
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from agent.bedrock import ModelStreamError
from agent.models import (
    ChunkEvent, RetryEvent, CompleteEvent, ErrorEvent,
    HistoryEntry, NewTurn, Preamble, TurnRequest
)
from agent.prompt import FILLER_NUDGE
from agent.protocol import (
    MessagePart, CompleteTask, PerformAction, ActionResult,
    parse_message, extract_explore_elements, message_part_to_dict
)
from .browser import BrowserDriver, BrowserDriverError
from .constants import DEFAULT_CONFIG
from .interactions import build_directed_instruction, execute_action, format_action_result
from .models import ChatMessage, ParentRef, WarningEvent, TurnCompleteEvent, ExplorationCompleteEvent
from .session import ExploreSession
from .snapshots import to_data_uri, save_screenshot
from .utils import is_internal_link

logger = logging.getLogger(__name__)

ERROR_TRANSCRIPT_MESSAGE = "Sorry, there was an error processing your message."


class TurnKind(str, Enum):
    EXPLORE = "explore"
    ACTION = "action"


class OrchestratorState(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL_TURN = "awaiting_model_turn"
    PROCESSING_EXPLORE_TURN = "processing_explore_turn"
    PROCESSING_ACTION_TURN = "processing_action_turn"


@dataclass
class TurnInstruction:
    kind: TurnKind
    text: str
    image: Optional[str] = None
    fresh: bool = True  # 会話履歴を破棄して始める


@dataclass
class TurnOutcome:
    turn_id: str
    text: str
    parts: List[MessagePart]
    image: Optional[str] = None


class ExploreOrchestrator:
    def __init__(
        self,
        driver: BrowserDriver,
        model_client,
        store=None,
        config: Optional[Dict[str, Any]] = None,
        on_event: Optional[Callable[[Any], None]] = None,
        session: Optional[ExploreSession] = None,
    ):
        self.driver = driver
        self.model_client = model_client
        self.store = store
        self.config = {**DEFAULT_CONFIG, **(config or {})}
        self.on_event = on_event
        self.session = session or ExploreSession.new(dedupe_edges=self.config['dedupe_edges'])

        self.state = OrchestratorState.IDLE
        self.is_processing = False
        self.messages: List[ChatMessage] = []
        self.history: List[HistoryEntry] = []
        self.error: Optional[str] = None
        self.driver_failures = 0
        self.usage = {'inputTokens': 0, 'outputTokens': 0, 'cacheReadInputTokens': 0, 'cacheWriteInputTokens': 0}

        self._active_turn_id: Optional[str] = None
        self._running = False
        self._stopped = False
        self._task = ""
        self._item_turns = 0
        self._filler_turns = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """実行中なら停止し、最後のスナップショットを保存してドライバーを片付ける"""
        if self._running:
            self.stop()
        await self._snapshot()
        try:
            await self.driver.cleanup()
        except BrowserDriverError as e:
            logger.warning(f"Driver cleanup failed: {e}")

    # ---- セッション操作 ------------------------------------------------------

    async def start(self, seed_url: Optional[str] = None) -> bool:
        """フロンティアが尽きるか停止されるまで探索する。正常に完了したら True"""
        if self._running:
            logger.info("Exploration already running, ignoring start request")
            return False

        self._running = True
        self._stopped = False
        self.error = None
        if seed_url and not self.session.seed_url:
            self.session.seed_url = seed_url

        try:
            instruction = await self._first_instruction(seed_url)
            while instruction is not None and not self._stopped:
                outcome = await self.start_turn(instruction)
                if outcome is None:
                    break
                instruction = await self._process_turn(instruction, outcome)
        finally:
            self._running = False
            self.state = OrchestratorState.IDLE

        if self._stopped or self.error:
            return False
        self._report_completion()
        return True

    def stop(self) -> bool:
        """進行中のターンを打ち切る。以降のチャンクは配信しない"""
        if not (self._running or self.is_processing):
            return False
        self._stopped = True
        self._active_turn_id = None
        self.is_processing = False
        self._finalize_partial()
        self.state = OrchestratorState.IDLE
        logger.info("Exploration stopped")
        return True

    async def resume(self, session_id: str) -> ExploreSession:
        if self._running:
            raise RuntimeError("Cannot resume while an exploration is running")
        self.session = await self.store.load(session_id)
        self.history = []
        self.messages = []
        logger.info(f"Resumed session {session_id}: {len(self.session.graph.nodes)} pages, "
                    f"{self.session.frontier.pending_count()} pending elements")
        return self.session

    async def clear(self):
        if self._running:
            self.stop()
        if self.store:
            await self.store.delete(self.session.session_id)
        self.session = ExploreSession.new(dedupe_edges=self.config['dedupe_edges'])
        self.history = []
        self.messages = []
        self.error = None

    # ---- モデルターン --------------------------------------------------------

    async def start_turn(self, instruction: TurnInstruction) -> Optional[TurnOutcome]:
        """1ターン分モデルへ問い合わせる。別のターンが進行中なら何もしない"""
        if self.is_processing:
            logger.info("A model turn is already in flight, ignoring")
            return None

        self.is_processing = True
        turn_id = f"turn_{uuid.uuid4().hex[:12]}"
        self._active_turn_id = turn_id
        self.state = OrchestratorState.AWAITING_MODEL_TURN

        try:
            if instruction.fresh:
                self.history = []
            request = TurnRequest(
                preamble=await self._preamble(instruction),
                new_turn=NewTurn(instruction.text, instruction.image),
                history=list(self.history),
            )
            self.messages.append(ChatMessage(instruction.text, is_user=True))
            return await self._consume_stream(turn_id, request, instruction.kind)
        finally:
            if self._active_turn_id == turn_id:
                self._active_turn_id = None
                self.is_processing = False

    async def _preamble(self, instruction: TurnInstruction) -> Preamble:
        if instruction.kind == TurnKind.EXPLORE:
            return Preamble.explore()
        return Preamble.directed_action(self._task or instruction.text, await self._current_url() or "")

    async def _consume_stream(self, turn_id: str, request: TurnRequest, kind: TurnKind) -> Optional[TurnOutcome]:
        stream = self.model_client.stream(request)
        try:
            while True:
                try:
                    event = await asyncio.wait_for(stream.__anext__(), timeout=self.config['stream_timeout'])
                except StopAsyncIteration:
                    if self._active_turn_id == turn_id:
                        self._fail("Model stream ended without a completion event")
                    return None
                except asyncio.TimeoutError:
                    if self._active_turn_id == turn_id:
                        self._fail("Connection timeout - no response received")
                        self._stopped = True
                    return None
                except Exception as e:
                    if self._active_turn_id == turn_id:
                        logger.exception("Model stream raised an unexpected error")
                        self._fail(f"Unexpected model stream error: {e}")
                    return None

                if self._active_turn_id != turn_id:
                    return None

                if isinstance(event, ChunkEvent):
                    self._append_partial(event.text)
                    self._emit(event)
                elif isinstance(event, RetryEvent):
                    # 失敗した試行のチャンクは破棄する
                    self._discard_partial()
                    self._emit(event)
                elif isinstance(event, ErrorEvent):
                    self._fail(event.message)
                    return None
                elif isinstance(event, CompleteEvent):
                    self._finalize_partial(event.text)
                    self._add_usage(event.usage)
                    self.history.append(HistoryEntry("user", request.new_turn.text))
                    self.history.append(HistoryEntry("model", event.text))
                    self.state = (OrchestratorState.PROCESSING_EXPLORE_TURN if kind == TurnKind.EXPLORE
                                  else OrchestratorState.PROCESSING_ACTION_TURN)
                    self._emit(TurnCompleteEvent(turn_id, event.text))
                    return TurnOutcome(turn_id, event.text, parse_message(event.text), image=event.image)
        finally:
            await stream.aclose()

    # ---- ターンの処理 --------------------------------------------------------

    async def _first_instruction(self, seed_url: Optional[str]) -> Optional[TurnInstruction]:
        frontier = self.session.frontier
        if frontier.visited_routes:
            # 再開: 中断された要素はキューの先頭へ戻す
            if frontier.currently_exploring:
                frontier.requeue_front(frontier.currently_exploring)
                frontier.clear_currently_exploring()
            return await self._next_frontier_instruction()

        target = seed_url or self.session.seed_url
        text = f"Explore {target}" if target else "Explore the current page"
        return TurnInstruction(TurnKind.EXPLORE, text, image=await self._screenshot())

    async def _process_turn(self, instruction: TurnInstruction, outcome: TurnOutcome) -> Optional[TurnInstruction]:
        """ターンの結果から次の指示を決める。None なら探索終了"""
        elements = extract_explore_elements(outcome.text)
        logger.debug(f"Turn {outcome.turn_id} parts: {[message_part_to_dict(part) for part in outcome.parts]}")

        if instruction.kind == TurnKind.EXPLORE:
            await self._record_page(elements, outcome.image)
            return await self._next_frontier_instruction()

        self._item_turns += 1
        concluded = any(
            isinstance(part, CompleteTask) or (isinstance(part, ActionResult) and part.is_success)
            for part in outcome.parts
        )
        if concluded:
            url = await self._current_url()
            if url and not self.session.frontier.is_visited(url) and self._in_scope(url):
                if elements:
                    await self._record_page(elements, outcome.image, url=url)
                    return await self._next_frontier_instruction()
                # 新しいページの最初のターンは探索プリアンブルで行う
                return TurnInstruction(TurnKind.EXPLORE, f"Explore {url}", image=await self._screenshot())
            return await self._next_frontier_instruction()

        if self._item_turns >= self.config['max_turns_per_item']:
            self._abandon_item(f"no completion after {self._item_turns} turns")
            return await self._next_frontier_instruction()

        action = next((part for part in outcome.parts if isinstance(part, PerformAction)), None)
        if action:
            self._filler_turns = 0
            response = await execute_action(self.driver, action)
            return TurnInstruction(TurnKind.ACTION, format_action_result(response), image=response.screenshot, fresh=False)

        # 会話だけの応答（質問を含む）
        self._filler_turns += 1
        if self._filler_turns > self.config['filler_turn_limit']:
            self._abandon_item("model kept answering without an action")
            return await self._next_frontier_instruction()
        return TurnInstruction(TurnKind.ACTION, FILLER_NUDGE, fresh=False)

    async def _next_frontier_instruction(self) -> Optional[TurnInstruction]:
        frontier = self.session.frontier
        frontier.clear_currently_exploring()
        item = frontier.dequeue_next()
        if item is None:
            await self._snapshot()
            return None

        frontier.mark_currently_exploring(item)
        self._task = build_directed_instruction(item)
        self._item_turns = 0
        self._filler_turns = 0
        self.messages = []
        await self._snapshot()
        logger.info(f"Next element: '{item.element.text}' on {item.url} ({frontier.pending_count()} pending)")
        return TurnInstruction(TurnKind.ACTION, self._task, image=await self._screenshot())

    async def _record_page(self, elements, screenshot: Optional[str], url: Optional[str] = None) -> Optional[str]:
        """現在のページをグラフとフロンティアへ記録する。記録しなかった場合は None"""
        if url is None:
            url = await self._current_url()
        if not url:
            return None

        graph, frontier = self.session.graph, self.session.frontier
        screenshot = to_data_uri(screenshot)

        if frontier.is_visited(url):
            logger.info(f"Page already explored: {url}")
            graph.upsert_node(url, screenshot)
            return None

        if not self._in_scope(url):
            return None

        node_id = graph.upsert_node(url, screenshot)
        item = frontier.currently_exploring
        if item:
            graph.add_edge(item.parent.node_id, node_id, item.element.text)

        dropped_before = len(frontier.dropped)
        parent = ParentRef(url=url, node_id=node_id, id=item.id if item else None)
        items = frontier.enqueue_discovered(url, elements, parent)
        graph.record_elements(node_id, [queued.id for queued in items])

        dropped = len(frontier.dropped) - dropped_before
        if dropped:
            self._warn(f"{dropped} element(s) on {url} had no text or coordinates and were skipped")

        if screenshot:
            await self._describe_page(node_id, screenshot)
            self._save_screenshot(screenshot)

        await self._snapshot()
        return node_id

    def _in_scope(self, url: str) -> bool:
        seed_url = self.session.seed_url
        if self.config.get('same_domain_only') and seed_url and not is_internal_link(seed_url, url):
            self._warn(f"Skipping page outside of {seed_url}: {url}")
            return False
        return True

    async def _describe_page(self, node_id: str, screenshot: str):
        node = self.session.graph.nodes[node_id]
        if not self.config.get('describe_pages') or node.url in self.session.described_pages:
            return
        self.session.described_pages.add(node.url)
        try:
            node.description = await self.model_client.describe_page(screenshot)
        except ModelStreamError as e:
            self._warn(f"Could not describe {node.url}: {e}")

    def _save_screenshot(self, screenshot: str):
        if not self.config.get('save_screenshots'):
            return
        try:
            save_screenshot(screenshot, self.config['output_dir'], self.session.session_id)
        except OSError as e:
            self._warn(f"Screenshot save error: {e}")

    def _abandon_item(self, reason: str):
        item = self.session.frontier.currently_exploring
        if item:
            self._warn(f"Giving up on '{item.element.text}' on {item.url}: {reason}")

    # ---- ドライバー ----------------------------------------------------------

    async def _current_url(self) -> Optional[str]:
        try:
            url = await self.driver.current_url()
        except BrowserDriverError as e:
            self._driver_warning(f"Could not read the current URL: {e}")
            return None
        if not url:
            self._driver_warning("Browser driver did not report a current URL")
            return None
        return url

    async def _screenshot(self) -> Optional[str]:
        try:
            return await self.driver.screenshot()
        except BrowserDriverError as e:
            self._driver_warning(f"Could not take a screenshot: {e}")
            return None

    def _driver_warning(self, message: str):
        self.driver_failures += 1
        self._warn(message)

    # ---- 通知と記録 ----------------------------------------------------------

    def _emit(self, event):
        if self.on_event:
            self.on_event(event)

    def _warn(self, message: str):
        logger.warning(message)
        self._emit(WarningEvent(message))

    def _fail(self, message: str):
        logger.error(f"Turn failed: {message}")
        self.error = message
        self._finalize_partial()
        self.messages.append(ChatMessage(ERROR_TRANSCRIPT_MESSAGE, is_user=False))
        self._emit(ErrorEvent(message))

    def _append_partial(self, text: str):
        if self.messages and self.messages[-1].is_partial:
            self.messages[-1].text += text
        else:
            self.messages.append(ChatMessage(text, is_user=False, is_partial=True))

    def _discard_partial(self):
        if self.messages and self.messages[-1].is_partial:
            self.messages.pop()

    def _finalize_partial(self, text: Optional[str] = None):
        if self.messages and self.messages[-1].is_partial:
            self.messages[-1].is_partial = False
            if text is not None:
                self.messages[-1].text = text
        elif text is not None:
            self.messages.append(ChatMessage(text, is_user=False))

    def _add_usage(self, usage: Dict[str, int]):
        for key in self.usage:
            self.usage[key] += usage.get(key, 0)

    async def _snapshot(self):
        if not self.store:
            return
        self.session.touch()
        try:
            await self.store.save(self.session)
        except Exception as e:
            # スナップショットはベストエフォート
            logger.warning(f"Session snapshot failed: {e}")

    def _report_completion(self):
        graph = self.session.graph
        logger.info(f"Exploration completed! Pages: {len(graph.nodes)}, edges: {len(graph.edges)}")
        logger.info(f"Token usage: input={self.usage['inputTokens']} output={self.usage['outputTokens']} "
                    f"cache_read={self.usage['cacheReadInputTokens']} cache_write={self.usage['cacheWriteInputTokens']}")
        self._emit(ExplorationCompleteEvent(self.session.session_id, len(graph.nodes), len(graph.edges)))
