# interactions.py
import logging

from agent.protocol import PerformAction, render_action_result
from .browser import BrowserDriver, BrowserDriverError
from .models import ActionRequest, ActionResponse, FrontierItem

logger = logging.getLogger(__name__)


def build_directed_instruction(item: FrontierItem) -> str:
    element = item.element
    return (
        f"In {item.url} \n Visit {element.text} on coordinate : {element.coordinates} "
        f"with about this element : {element.about}. You can decide what to do prior to it."
    )


def action_request_from_part(part: PerformAction) -> ActionRequest:
    return ActionRequest(
        action=part.action,
        url=part.url,
        coordinate=part.coordinate,
        text=part.text,
        key=part.key,
    )


async def execute_action(driver: BrowserDriver, part: PerformAction) -> ActionResponse:
    """モデルが指示したアクションをドライバーで実行する。失敗は error の結果として返す"""
    request = action_request_from_part(part)
    logger.info(f"Performing action: {request.action} {request.url or request.coordinate or request.text or request.key or ''}")
    try:
        return await driver.perform_action(request)
    except BrowserDriverError as e:
        logger.warning(f"Action {request.action} failed: {e}")
        return ActionResponse("error", str(e))


def format_action_result(response: ActionResponse) -> str:
    return render_action_result(response.status, response.message)
