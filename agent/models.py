# models.py
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any


class PreambleKind(str, Enum):
    EXPLORE = "explore"
    ACTION = "action"


@dataclass
class Preamble:
    """システムプロンプトの選択（探索モード or 指示アクションモード）"""
    kind: PreambleKind = PreambleKind.EXPLORE
    task: str = ""
    current_url: str = ""

    @classmethod
    def explore(cls) -> "Preamble":
        return cls(PreambleKind.EXPLORE)

    @classmethod
    def directed_action(cls, task: str, current_url: str = "") -> "Preamble":
        return cls(PreambleKind.ACTION, task=task, current_url=current_url or "")


@dataclass
class HistoryEntry:
    role: str  # user or model
    content: str


@dataclass
class NewTurn:
    text: str
    image: Optional[str] = None  # base64 PNG（data URI も可）


@dataclass
class TurnRequest:
    preamble: Preamble
    new_turn: NewTurn
    history: List[HistoryEntry] = field(default_factory=list)


# ---- ストリームイベント -------------------------------------------------

@dataclass
class ChunkEvent:
    text: str


@dataclass
class RetryEvent:
    """失敗した試行のチャンクをすべて無効にする"""
    attempt: int
    reason: str


@dataclass
class CompleteEvent:
    text: str
    image: Optional[str] = None
    stop_reason: Optional[str] = None
    usage: Dict[str, int] = field(default_factory=dict)


@dataclass
class ErrorEvent:
    message: str
