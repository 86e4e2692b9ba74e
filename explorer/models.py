# models.py
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List


@dataclass
class ElementDescriptor:
    text: str
    coordinates: str
    about: str = ""


@dataclass
class ParentRef:
    url: str       # 要素が見つかったページ
    node_id: str   # そのページのノード
    id: Optional[str] = None  # そのページへ到達させたフロンティア要素


@dataclass
class FrontierItem:
    id: str
    url: str
    element: ElementDescriptor
    parent: ParentRef


@dataclass
class PageNode:
    id: str
    url: str
    screenshot: Optional[str] = None
    discovered_element_ids: List[str] = field(default_factory=list)
    description: Optional[str] = None


@dataclass
class NavigationEdge:
    id: str
    source_id: str
    target_id: str
    label: str


@dataclass
class ActionRequest:
    action: str
    url: Optional[str] = None
    coordinate: Optional[str] = None
    text: Optional[str] = None
    key: Optional[str] = None


@dataclass
class ActionResponse:
    status: str  # success or error
    message: str
    screenshot: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.status == "success"


@dataclass
class ChatMessage:
    text: str
    is_user: bool
    is_partial: bool = False
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())


# ---- 呼び出し元へ通知するイベント（ChunkEvent / ErrorEvent は agent.models） ----

@dataclass
class WarningEvent:
    message: str


@dataclass
class TurnCompleteEvent:
    turn_id: str
    text: str


@dataclass
class ExplorationCompleteEvent:
    session_id: str
    pages: int
    edges: int
