import copy
from typing import List, Dict, Any, Tuple


def cache_support(model_id: str) -> Tuple[bool, bool]:
    """(is_claude, is_nova) を返す"""
    lower_id = (model_id or "").lower()
    return 'claude' in lower_id, 'nova' in lower_id


def add_cache_points(messages: List[Dict[str, Any]], model_id: str) -> List[Dict[str, Any]]:
    """末尾側のユーザーターンにキャッシュポイントを付与したコピーを返す"""
    is_claude, is_nova = cache_support(model_id)
    if not (is_claude or is_nova):
        return messages

    max_points = 2 if is_claude else 3
    result = copy.deepcopy(messages)
    marked = 0

    for message in reversed(result):
        if marked >= max_points:
            break
        if message["role"] != "user":
            continue
        # Nova はテキストを含むターンにのみ付与できる
        if is_nova and not any("text" in block for block in message["content"]):
            continue
        message["content"].append({"cachePoint": {"type": "default"}})
        marked += 1

    return result
