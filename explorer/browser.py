"""
ブラウザドライバー

オーケストレーターが利用する能力インターフェース（BrowserDriver）と、その2つの実装:
- PlaywrightBrowserDriver: Playwright の Chromium（ヘッドレス）
- DockerVNCDriver: Ubuntu + VNC コンテナ内の Firefox を docker exec と xdotool で操作

ドライバーはセッション設定時に create_driver で一度だけ選択する。
"""
import asyncio
import base64
import logging
import subprocess
from abc import ABC, abstractmethod
from typing import Optional, Tuple, Dict, Any

from playwright.async_api import async_playwright, Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from .constants import (
    DRIVER_PLAYWRIGHT, DRIVER_DOCKER_VNC,
    VNC_CONTAINER_NAME, VNC_IMAGE_NAME, VNC_COMMAND_TIMEOUT
)
from .models import ActionRequest, ActionResponse

logger = logging.getLogger(__name__)

ACTION_ALIASES = {
    "goto": "launch",
    "navigate": "launch",
    "doubleClick": "double_click",
    "keyPress": "key_press",
    "press": "key_press",
    "scrollUp": "scroll_up",
    "scrollDown": "scroll_down",
}

SCROLL_DELTA = 600


class BrowserDriverError(Exception):
    """ドライバーが要求に応えられない（未初期化、コマンド失敗など）"""


def normalize_action_name(name: str) -> str:
    name = (name or "").strip()
    return ACTION_ALIASES.get(name, name.lower())


def parse_coordinate(value: Optional[str]) -> Tuple[float, float]:
    """"x,y" 形式の座標を数値へ変換"""
    if not value:
        raise ValueError("Coordinate is required")
    cleaned = value.strip().strip("()[]")
    try:
        x, y = (float(v) for v in cleaned.split(","))
    except ValueError:
        raise ValueError(f"Invalid coordinate: {value}")
    return x, y


class BrowserDriver(ABC):
    source: str = ""

    @abstractmethod
    async def initialize(self, start_url: Optional[str] = None) -> ActionResponse:
        ...

    @abstractmethod
    async def current_url(self) -> Optional[str]:
        """現在の URL。取得できない場合は None"""

    @abstractmethod
    async def screenshot(self) -> Optional[str]:
        """base64 エンコードした PNG。取得できない場合は None"""

    @abstractmethod
    async def perform_action(self, action: ActionRequest) -> ActionResponse:
        ...

    @abstractmethod
    async def cleanup(self):
        ...

    async def screenshot_or_none(self) -> Optional[str]:
        """アクション後のスクリーンショット。失敗してもアクションの結果は変えない"""
        try:
            return await self.screenshot()
        except BrowserDriverError as e:
            logger.warning(f"Screenshot after action failed: {e}")
            return None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.cleanup()


class PlaywrightBrowserDriver(BrowserDriver):
    source = DRIVER_PLAYWRIGHT

    def __init__(self, headless: bool = True, viewport: Optional[Dict[str, int]] = None):
        self.headless = headless
        self.viewport = viewport or {"width": 1280, "height": 800}
        self.playwright = None
        self.browser = None
        self.context = None
        self.page = None

    async def initialize(self, start_url: Optional[str] = None) -> ActionResponse:
        self.playwright = await async_playwright().start()
        self.browser = await self.playwright.chromium.launch(headless=self.headless)
        self.context = await self.browser.new_context(viewport=self.viewport)
        self.page = await self.context.new_page()

        if start_url:
            try:
                await self.page.goto(start_url, wait_until='load', timeout=60000)
            except PlaywrightError as e:
                raise BrowserDriverError(f"Could not open {start_url}: {e}") from e
            await self._settle()
            return ActionResponse("success", f"Chromium launched with URL: {start_url}", await self.screenshot_or_none())
        return ActionResponse("success", "Chromium launched")

    async def _settle(self):
        try:
            await self.page.wait_for_load_state('networkidle', timeout=10000)
        except PlaywrightTimeoutError:
            logger.info("networkidle timeout, continuing")

    async def current_url(self) -> Optional[str]:
        if not self.page or self.page.is_closed():
            return None
        url = self.page.url
        return None if url in ("", "about:blank") else url

    async def screenshot(self) -> Optional[str]:
        if not self.page or self.page.is_closed():
            return None
        try:
            data = await self.page.screenshot(type="png")
        except PlaywrightError as e:
            raise BrowserDriverError(f"Screenshot failed: {e}") from e
        return base64.b64encode(data).decode('ascii')

    async def perform_action(self, action: ActionRequest) -> ActionResponse:
        if not self.page:
            return ActionResponse("error", "Browser not initialized")

        name = normalize_action_name(action.action)
        try:
            if name == "launch":
                if not action.url:
                    return ActionResponse("error", "launch requires a url")
                await self.page.goto(action.url, wait_until='load', timeout=60000)
                message = f"Navigated to {action.url}"
            elif name in ("click", "double_click"):
                x, y = parse_coordinate(action.coordinate)
                await self.page.mouse.click(x, y, click_count=2 if name == "double_click" else 1)
                message = f"Clicked at {x:.0f},{y:.0f}"
            elif name == "type":
                if action.text is None:
                    return ActionResponse("error", "type requires text")
                await self.page.keyboard.type(action.text)
                message = f"Typed {action.text}"
            elif name == "key_press":
                if not action.key:
                    return ActionResponse("error", "key_press requires a key")
                await self.page.keyboard.press(action.key)
                message = f"Pressed {action.key}"
            elif name in ("scroll_up", "scroll_down"):
                await self.page.mouse.wheel(0, -SCROLL_DELTA if name == "scroll_up" else SCROLL_DELTA)
                message = f"Scrolled {name.split('_')[1]}"
            elif name == "back":
                await self.page.go_back()
                message = "Navigated back"
            elif name == "wait":
                await self.page.wait_for_timeout(2000)
                message = "Waited 2 seconds"
            else:
                return ActionResponse("error", f"Unknown action: {action.action}")
            await self._settle()
        except (PlaywrightError, ValueError) as e:
            logger.warning(f"Action {name} failed: {e}")
            return ActionResponse("error", str(e), await self.screenshot_or_none())

        return ActionResponse("success", message, await self.screenshot_or_none())

    async def cleanup(self):
        errors = []
        for closer in (self.context, self.browser):
            if closer:
                try:
                    await closer.close()
                except PlaywrightError as e:
                    errors.append(e)
        if self.playwright:
            try:
                await self.playwright.stop()
            except PlaywrightError as e:
                errors.append(e)
        self.page = None
        self.context = None
        self.browser = None
        self.playwright = None
        if errors:
            raise BrowserDriverError(f"Browser cleanup failed: {errors[0]}")


class DockerVNCDriver(BrowserDriver):
    source = DRIVER_DOCKER_VNC

    XDOTOOL_KEYS = {"Enter": "Return", "Esc": "Escape", "Backspace": "BackSpace"}

    def __init__(self, container_name: str = VNC_CONTAINER_NAME, image_name: str = VNC_IMAGE_NAME,
                 display: str = ":1", command_timeout: int = VNC_COMMAND_TIMEOUT):
        self.container_name = container_name
        self.image_name = image_name
        self.display = display
        self.command_timeout = command_timeout
        self.container_id: Optional[str] = None

    async def _docker(self, *args: str) -> bytes:
        try:
            result = await asyncio.to_thread(
                subprocess.run, ["docker", *args], capture_output=True, timeout=self.command_timeout
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise BrowserDriverError(f"docker {args[0]} failed: {e}") from e
        if result.returncode != 0:
            stderr = result.stderr.decode('utf-8', errors='replace').strip()
            raise BrowserDriverError(f"docker {args[0]} failed: {stderr}")
        return result.stdout

    async def _exec(self, *command: str) -> bytes:
        if not self.container_id:
            raise BrowserDriverError("VNC not initialized")
        return await self._docker("exec", "-e", f"DISPLAY={self.display}", self.container_id, *command)

    async def _xdotool(self, *args: str) -> bytes:
        return await self._exec("xdotool", *args)

    async def initialize(self, start_url: Optional[str] = None) -> ActionResponse:
        try:
            status = (await self._docker("inspect", "-f", "{{.Id}} {{.State.Running}}", self.container_name)).decode().split()
            self.container_id = status[0]
            if status[1] != "true":
                logger.info(f"Starting existing container {self.container_id[:12]}")
                await self._docker("start", self.container_id)
        except BrowserDriverError:
            logger.info(f"Creating container {self.container_name} from {self.image_name}")
            output = await self._docker(
                "run", "-d", "--name", self.container_name,
                "-p", "6080:6080", "-p", "5900:5900", self.image_name
            )
            self.container_id = output.decode().strip()

        await self._wait_for_display()
        if start_url:
            await self._launch(start_url)
            return ActionResponse("success", f"Firefox launched with URL: {start_url}", await self.screenshot_or_none())
        return ActionResponse("success", "Connected to Ubuntu Docker VNC container")

    async def _wait_for_display(self, max_attempts: int = 60):
        for attempt in range(max_attempts):
            try:
                await self._xdotool("getdisplaygeometry")
                logger.info("VNC display is ready")
                return
            except BrowserDriverError:
                if attempt % 5 == 0:
                    logger.info(f"Waiting for VNC display... [{attempt + 1}/{max_attempts}]")
                await asyncio.sleep(1)
        raise BrowserDriverError("Timeout waiting for the VNC display to start")

    async def _firefox_running(self) -> bool:
        try:
            output = await self._xdotool("search", "--onlyvisible", "--class", "firefox")
        except BrowserDriverError:
            return False
        return bool(output.strip())

    async def _focus_firefox(self):
        await self._xdotool("search", "--onlyvisible", "--class", "firefox", "windowactivate", "--sync")

    async def _launch(self, url: str):
        if await self._firefox_running():
            await self._focus_firefox()
            await self._xdotool("key", "ctrl+l")
            await self._xdotool("type", "--delay", "20", "--", url)
            await self._xdotool("key", "Return")
        else:
            await self._docker(
                "exec", "-d", "-e", f"DISPLAY={self.display}", self.container_id,
                "firefox-esr", "--new-window", url
            )
        await asyncio.sleep(3)

    async def current_url(self) -> Optional[str]:
        if not self.container_id or not await self._firefox_running():
            return None
        # アドレスバーの内容をクリップボード経由で読む
        await self._focus_firefox()
        await self._xdotool("key", "ctrl+l", "ctrl+c", "Escape")
        url = (await self._exec("xclip", "-o", "-selection", "clipboard")).decode('utf-8', errors='replace').strip()
        return url or None

    async def screenshot(self) -> Optional[str]:
        if not self.container_id:
            return None
        data = await self._exec("import", "-window", "root", "png:-")
        return base64.b64encode(data).decode('ascii')

    async def perform_action(self, action: ActionRequest) -> ActionResponse:
        if not self.container_id:
            return ActionResponse("error", "VNC not initialized")

        name = normalize_action_name(action.action)
        try:
            if name == "launch":
                if not action.url:
                    return ActionResponse("error", "launch requires a url")
                await self._launch(action.url)
                message = f"Launched Firefox with URL: {action.url}"
            elif name in ("click", "double_click"):
                x, y = parse_coordinate(action.coordinate)
                repeat = "2" if name == "double_click" else "1"
                await self._xdotool("mousemove", str(int(x)), str(int(y)), "click", "--repeat", repeat, "1")
                message = f"Clicked at {int(x)},{int(y)}"
            elif name == "type":
                if action.text is None:
                    return ActionResponse("error", "type requires text")
                await self._xdotool("type", "--delay", "50", "--", action.text)
                message = f"Typed {action.text}"
            elif name == "key_press":
                if not action.key:
                    return ActionResponse("error", "key_press requires a key")
                await self._xdotool("key", "--", self.XDOTOOL_KEYS.get(action.key, action.key))
                message = f"Pressed {action.key}"
            elif name in ("scroll_up", "scroll_down"):
                await self._xdotool("click", "--repeat", "5", "4" if name == "scroll_up" else "5")
                message = f"Scrolled {name.split('_')[1]}"
            elif name == "back":
                await self._xdotool("key", "alt+Left")
                message = "Navigated back"
            elif name == "wait":
                await asyncio.sleep(2)
                message = "Waited 2 seconds"
            else:
                return ActionResponse("error", f"Unknown action: {action.action}")
            await asyncio.sleep(1)
        except (BrowserDriverError, ValueError) as e:
            logger.warning(f"VNC action {name} failed: {e}")
            return ActionResponse("error", str(e))

        return ActionResponse("success", message, await self.screenshot_or_none())

    async def cleanup(self):
        # コンテナは起動したまま残す
        logger.info("VNC resources cleaned up, container left running")
        self.container_id = None


def create_driver(source: str, config: Dict[str, Any]) -> BrowserDriver:
    if source == DRIVER_PLAYWRIGHT:
        return PlaywrightBrowserDriver(headless=not config.get('headful', False))
    if source == DRIVER_DOCKER_VNC:
        return DockerVNCDriver(
            container_name=config.get('vnc_container', VNC_CONTAINER_NAME),
            image_name=config.get('vnc_image', VNC_IMAGE_NAME),
        )
    raise ValueError(f"Unknown driver source: {source}")
