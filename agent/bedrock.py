"""
Amazon Bedrock モデルセッションクライアント

1ターン分のストリーミング呼び出し（converse_stream）を統一された契約で扱います。
- 受信したテキスト差分は即座に ChunkEvent として呼び出し元へ渡す
- 一時的なエラーではターン全体を最初からやり直し、直前の試行のチャンクは RetryEvent で無効化する
- ストリームは必ず CompleteEvent か ErrorEvent のどちらか1つで終わる
"""
import asyncio
import base64
import logging
from typing import AsyncIterator, Optional, List, Dict, Any, Tuple, Union

import boto3
import botocore.exceptions

from agent.config import (
    AWS_REGION, BEDROCK_MODEL_ID, MAX_TOKENS, TEMPERATURE,
    RETRY_ATTEMPT_COUNT, RETRY_DELAY_SECONDS, RETRYABLE_ERROR_CODES
)
from agent.cache_utils import add_cache_points, cache_support
from agent.models import TurnRequest, ChunkEvent, RetryEvent, CompleteEvent, ErrorEvent
from agent.prompt import create_system_prompt, PAGE_DESCRIPTION_PROMPT

logger = logging.getLogger(__name__)

StreamEvent = Union[ChunkEvent, RetryEvent, CompleteEvent, ErrorEvent]

ERROR_MESSAGE = "Error processing message. Please try again later."

# converse_stream のイベントとして届く例外
STREAM_EXCEPTION_KEYS = (
    "internalServerException",
    "modelStreamErrorException",
    "throttlingException",
    "serviceUnavailableException",
    "validationException",
)


class ModelStreamError(Exception):
    """ストリームが例外イベントを返した、または不完全なまま終了した"""

    def __init__(self, message: str, code: Optional[str] = None, retryable: bool = True):
        super().__init__(message)
        self.code = code
        self.retryable = retryable


def _normalize_code(code: Optional[str]) -> str:
    code = code or ""
    return code[:1].upper() + code[1:]


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, ModelStreamError):
        return error.retryable
    if isinstance(error, botocore.exceptions.ClientError):
        code = error.response.get('Error', {}).get('Code')
        return _normalize_code(code) in RETRYABLE_ERROR_CODES
    if isinstance(error, botocore.exceptions.BotoCoreError):
        # 接続エラー、読み取りタイムアウトなど
        return True
    return False


def _read_stream_event(event: Dict[str, Any]) -> Tuple[Optional[str], Any]:
    """converse_stream のイベントを ("text" | "stop" | "usage" | None, 値) に変換する"""
    for key in STREAM_EXCEPTION_KEYS:
        if key in event:
            message = event[key].get("message", key) if isinstance(event[key], dict) else str(event[key])
            raise ModelStreamError(message, code=key, retryable=key != "validationException")

    if "contentBlockDelta" in event:
        return "text", event["contentBlockDelta"].get("delta", {}).get("text")
    if "messageStop" in event:
        return "stop", event["messageStop"].get("stopReason")
    if "metadata" in event:
        return "usage", event["metadata"].get("usage", {})
    return None, None


def decode_image(image: str) -> bytes:
    if image.startswith("data:"):
        image = image.split(",", 1)[1]
    return base64.b64decode(image)


def image_block(image: str) -> Dict[str, Any]:
    return {"image": {"format": "png", "source": {"bytes": decode_image(image)}}}


def _append_message(messages: List[Dict[str, Any]], role: str, content: List[Dict[str, Any]]):
    # Converse API は同じロールの連続を受け付けないので結合する
    if messages and messages[-1]["role"] == role:
        messages[-1]["content"].extend(content)
    else:
        messages.append({"role": role, "content": list(content)})


def build_messages(request: TurnRequest) -> List[Dict[str, Any]]:
    """履歴と新しいターンを Converse API のメッセージ形式へ変換"""
    messages: List[Dict[str, Any]] = []
    for entry in request.history:
        if not entry.content:
            continue
        role = "user" if entry.role == "user" else "assistant"
        if not messages and role == "assistant":
            continue
        _append_message(messages, role, [{"text": entry.content}])

    content: List[Dict[str, Any]] = [{"text": request.new_turn.text}]
    if request.new_turn.image:
        content.append(image_block(request.new_turn.image))
    _append_message(messages, "user", content)
    return messages


class BedrockSessionClient:
    """Bedrock Runtime の converse_stream をラップしたモデルセッションクライアント"""

    def __init__(
        self,
        client=None,
        model_id: str = BEDROCK_MODEL_ID,
        region: str = AWS_REGION,
        retry_attempts: int = RETRY_ATTEMPT_COUNT,
        retry_delay: float = RETRY_DELAY_SECONDS,
        max_tokens: int = MAX_TOKENS,
        temperature: float = TEMPERATURE,
    ):
        self.client = client if client is not None else boto3.client("bedrock-runtime", region_name=region)
        self.model_id = model_id
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self.max_tokens = max_tokens
        self.temperature = temperature

    def build_request(self, request: TurnRequest) -> Dict[str, Any]:
        system = [{"text": create_system_prompt(request.preamble)}]
        is_claude, is_nova = cache_support(self.model_id)
        if is_claude or is_nova:
            system.append({"cachePoint": {"type": "default"}})

        return {
            "modelId": self.model_id,
            "messages": add_cache_points(build_messages(request), self.model_id),
            "system": system,
            "inferenceConfig": {"maxTokens": self.max_tokens, "temperature": self.temperature},
        }

    async def stream(self, request: TurnRequest) -> AsyncIterator[StreamEvent]:
        """1ターンをストリーミングし、イベントを順に返す"""
        kwargs = self.build_request(request)
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.retry_attempts + 1):
            try:
                async for event in self._stream_once(kwargs, request.new_turn.image):
                    yield event
                return
            except (ModelStreamError, botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
                last_error = e
                if not is_retryable(e):
                    logger.error(f"Model stream failed with a non-retryable error: {e}")
                    break
                if attempt == self.retry_attempts:
                    logger.error(f"Model stream failed on the last attempt ({attempt}/{self.retry_attempts}): {e}")
                    break
                logger.warning(f"Model stream failed, retrying in {self.retry_delay}s ({attempt}/{self.retry_attempts}): {e}")
                yield RetryEvent(attempt=attempt, reason=str(e))
                await asyncio.sleep(self.retry_delay)

        yield ErrorEvent(f"{ERROR_MESSAGE} ({last_error})" if last_error else ERROR_MESSAGE)

    async def _stream_once(self, kwargs: Dict[str, Any], image: Optional[str]) -> AsyncIterator[StreamEvent]:
        response = await asyncio.to_thread(self.client.converse_stream, **kwargs)
        try:
            events = iter(response["stream"])
        except (KeyError, TypeError) as e:
            raise ModelStreamError(f"Malformed converse_stream response: {e!r}") from e

        text_parts: List[str] = []
        stop_reason = None
        usage: Dict[str, int] = {}

        while True:
            event = await asyncio.to_thread(next, events, None)
            if event is None:
                break

            try:
                kind, value = _read_stream_event(event)
            except (KeyError, TypeError, AttributeError) as e:
                raise ModelStreamError(f"Malformed stream event: {e!r}") from e

            if kind == "text" and value:
                text_parts.append(value)
                yield ChunkEvent(value)
            elif kind == "stop":
                stop_reason = value
            elif kind == "usage":
                usage = value

        if stop_reason is None:
            raise ModelStreamError("Stream ended without a messageStop event")

        yield CompleteEvent("".join(text_parts), image=image, stop_reason=stop_reason, usage=usage)

    async def describe_page(self, image: str) -> str:
        """スクリーンショットからページの説明文を生成（非ストリーミング）"""
        messages = [{"role": "user", "content": [{"text": PAGE_DESCRIPTION_PROMPT}, image_block(image)]}]

        for attempt in range(1, self.retry_attempts + 1):
            try:
                response = await asyncio.to_thread(
                    self.client.converse,
                    modelId=self.model_id,
                    messages=messages,
                    inferenceConfig={"maxTokens": 1024, "temperature": 0.0},
                )
                break
            except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
                if not is_retryable(e) or attempt == self.retry_attempts:
                    raise ModelStreamError(str(e), retryable=False) from e
                logger.warning(f"Page description failed, retrying in {self.retry_delay}s ({attempt}/{self.retry_attempts})")
                await asyncio.sleep(self.retry_delay)

        try:
            content = response['output']['message']['content']
            return "".join(block['text'] for block in content if 'text' in block).strip()
        except (KeyError, TypeError) as e:
            raise ModelStreamError(f"Malformed converse response: {e!r}", retryable=False) from e
