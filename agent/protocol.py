"""
モデル応答のタグプロトコル解析

応答文字列を左から走査し、最も手前にある開始タグから順にメッセージパートへ分解します。
タグはネストしません。終了タグが見つからない開始タグはそのままテキストとして残し、
開始タグの直後から走査を続けます。どんな入力に対しても例外は送出しません。
"""
import json
import logging
from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Any, Tuple, Callable, Union

logger = logging.getLogger(__name__)


@dataclass
class TextPart:
    content: str
    type: str = field(default="text", init=False)


@dataclass
class FollowupQuestion:
    question: str
    type: str = field(default="followup_question", init=False)


@dataclass
class CompleteTask:
    result: str
    command: Optional[str] = None
    type: str = field(default="complete_task", init=False)


@dataclass
class PerformAction:
    action: str
    url: Optional[str] = None
    coordinate: Optional[str] = None
    text: Optional[str] = None
    key: Optional[str] = None
    about: Optional[str] = None
    marker_number: Optional[str] = None
    type: str = field(default="perform_action", init=False)


@dataclass
class ActionResult:
    status: str  # success or error
    message: str
    screenshot: Optional[str] = None
    parsed_elements: Optional[Any] = None
    type: str = field(default="action_result", init=False)

    @property
    def is_success(self) -> bool:
        return self.status == "success"


MessagePart = Union[TextPart, FollowupQuestion, CompleteTask, PerformAction, ActionResult]


@dataclass
class ExploredElement:
    """探索モードの出力に含まれるクリック可能要素"""
    text: Optional[str] = None
    coordinates: Optional[str] = None
    about: str = ""


# ---- 文法テーブル ---------------------------------------------------------

@dataclass(frozen=True)
class FieldSpec:
    name: str
    required: bool = False
    allow_empty: bool = False


@dataclass(frozen=True)
class TagSpec:
    name: str
    fields: Tuple[FieldSpec, ...]
    build: Callable[[Dict[str, str]], Optional[MessagePart]]

    @property
    def open_tag(self) -> str:
        return f"<{self.name}>"

    @property
    def close_tag(self) -> str:
        return f"</{self.name}>"


def _build_action_result(values: Dict[str, str]) -> Optional[ActionResult]:
    status = values["action_status"]
    if status not in ("success", "error"):
        return None
    parsed_elements = None
    if "omni_parser" in values:
        try:
            parsed_elements = json.loads(values["omni_parser"])
        except ValueError:
            return None
    return ActionResult(
        status=status,
        message=values["action_message"],
        screenshot=values.get("screenshot"),
        parsed_elements=parsed_elements,
    )


TAG_GRAMMAR: Tuple[TagSpec, ...] = (
    TagSpec(
        "ask_followup_question",
        (FieldSpec("question", required=True),),
        lambda v: FollowupQuestion(v["question"]),
    ),
    TagSpec(
        "complete_task",
        (FieldSpec("result", required=True), FieldSpec("command")),
        lambda v: CompleteTask(v["result"], command=v.get("command")),
    ),
    TagSpec(
        "perform_action",
        (
            FieldSpec("action", required=True),
            FieldSpec("url"),
            FieldSpec("coordinate"),
            FieldSpec("text"),
            FieldSpec("key"),
            FieldSpec("about_this_action"),
            FieldSpec("marker_number"),
        ),
        lambda v: PerformAction(
            v["action"],
            url=v.get("url"),
            coordinate=v.get("coordinate"),
            text=v.get("text"),
            key=v.get("key"),
            about=v.get("about_this_action"),
            marker_number=v.get("marker_number"),
        ),
    ),
    TagSpec(
        "perform_action_result",
        (
            FieldSpec("action_status", required=True),
            FieldSpec("action_message", required=True, allow_empty=True),
            FieldSpec("screenshot"),
            FieldSpec("omni_parser"),
        ),
        _build_action_result,
    ),
)

_TAGS_BY_NAME = {spec.name: spec for spec in TAG_GRAMMAR}


def _extract_fields(body: str, fields: Tuple[FieldSpec, ...]) -> Optional[Dict[str, str]]:
    """フィールドを定義順に探す。必須フィールドが欠けていれば None"""
    values: Dict[str, str] = {}
    position = 0
    for spec in fields:
        open_tag, close_tag = f"<{spec.name}>", f"</{spec.name}>"
        start = body.find(open_tag, position)
        end = body.find(close_tag, start + len(open_tag)) if start != -1 else -1
        if start == -1 or end == -1:
            if spec.required:
                return None
            continue
        value = body[start + len(open_tag):end].strip()
        position = end + len(close_tag)
        if not value and not spec.allow_empty:
            if spec.required:
                return None
            continue
        values[spec.name] = value
    return values


def _build_part(spec: TagSpec, body: str) -> Optional[MessagePart]:
    values = _extract_fields(body, spec.fields)
    if values is None:
        return None
    return spec.build(values)


def _append_text(parts: List[MessagePart], text: str) -> None:
    text = text.strip()
    if text:
        parts.append(TextPart(text))


def parse_message(text: str) -> List[MessagePart]:
    """応答文字列をメッセージパートのリストへ分解する"""
    parts: List[MessagePart] = []
    text = text or ""
    position = 0

    while position < len(text):
        earliest: Optional[Tuple[int, TagSpec]] = None
        for spec in TAG_GRAMMAR:
            index = text.find(spec.open_tag, position)
            if index != -1 and (earliest is None or index < earliest[0]):
                earliest = (index, spec)

        if earliest is None:
            _append_text(parts, text[position:])
            break

        index, spec = earliest
        _append_text(parts, text[position:index])

        body_start = index + len(spec.open_tag)
        close_index = text.find(spec.close_tag, body_start)
        if close_index == -1:
            # 終了タグなし: 開始タグをそのまま文字列として残す
            parts.append(TextPart(spec.open_tag))
            position = body_start
            continue

        end = close_index + len(spec.close_tag)
        part = _build_part(spec, text[body_start:close_index])
        if part is None:
            logger.debug(f"Malformed <{spec.name}> block, keeping it as text")
            _append_text(parts, text[index:end])
        else:
            parts.append(part)
        position = end

    return parts


def extract_first_action(text: str) -> Optional[PerformAction]:
    """最初に解釈できる perform_action だけを取り出す"""
    spec = _TAGS_BY_NAME["perform_action"]
    text = text or ""
    position = 0
    while True:
        start = text.find(spec.open_tag, position)
        if start == -1:
            return None
        body_start = start + len(spec.open_tag)
        close_index = text.find(spec.close_tag, body_start)
        if close_index == -1:
            return None
        part = _build_part(spec, text[body_start:close_index])
        if part is not None:
            return part
        position = close_index + len(spec.close_tag)


def _find_field(body: str, name: str) -> Optional[str]:
    start = body.find(f"<{name}>")
    if start == -1:
        return None
    start += len(name) + 2
    end = body.find(f"</{name}>", start)
    if end == -1:
        return None
    value = body[start:end].strip()
    return value or None


def extract_explore_elements(text: str) -> List[ExploredElement]:
    """<explore_output> 内の <clickable_element> を文書順に取り出す"""
    text = text or ""
    start = text.find("<explore_output>")
    if start != -1:
        end = text.find("</explore_output>", start)
        text = text[start + len("<explore_output>"):end if end != -1 else len(text)]

    elements: List[ExploredElement] = []
    position = 0
    while True:
        start = text.find("<clickable_element>", position)
        if start == -1:
            break
        end = text.find("</clickable_element>", start)
        if end == -1:
            break
        body = text[start + len("<clickable_element>"):end]
        elements.append(ExploredElement(
            text=_find_field(body, "text"),
            coordinates=_find_field(body, "coordinates"),
            about=_find_field(body, "about_this_element") or "",
        ))
        position = end + len("</clickable_element>")
    return elements


def render_action_result(status: str, message: str) -> str:
    """アクション実行結果を次のユーザーターン用のタグ文字列にする"""
    return (
        "<perform_action_result>"
        f"<action_status>{status}</action_status>"
        f"<action_message>{message}</action_message>"
        "</perform_action_result>"
    )


def message_part_to_dict(part: MessagePart) -> Dict[str, Any]:
    """None のオプション項目は含めない"""
    return {key: value for key, value in asdict(part).items() if value is not None}
