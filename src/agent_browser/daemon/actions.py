"""Dispatch of parsed protocol commands onto a browser backend."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, TypeVar

from ..browser.base import BrowserBackend
from ..browser.snapshot import SnapshotOptions, snapshot_stats
from ..errors import AgentBrowserError
from ..protocol import (
    BackCommand,
    BaseCommand,
    CheckCommand,
    ClickCommand,
    CloseCommand,
    ConsoleCommand,
    ContentCommand,
    CookiesClearCommand,
    CookiesGetCommand,
    CookiesSetCommand,
    DblclickCommand,
    DialogCommand,
    DragCommand,
    ErrorsCommand,
    EvaluateCommand,
    FillCommand,
    FocusCommand,
    ForwardCommand,
    FrameCommand,
    GeolocationCommand,
    GetByLabelCommand,
    GetByRoleCommand,
    GetByTextCommand,
    GetTextCommand,
    HoverCommand,
    InputKeyboardCommand,
    InputMouseCommand,
    InputTouchCommand,
    IsCheckedCommand,
    IsEnabledCommand,
    IsVisibleCommand,
    LaunchCommand,
    MainFrameCommand,
    MouseDownCommand,
    MouseMoveCommand,
    MouseUpCommand,
    NavigateCommand,
    OfflineCommand,
    PressCommand,
    ReloadCommand,
    Response,
    ScreencastStartCommand,
    ScreencastStopCommand,
    ScreenshotCommand,
    ScrollCommand,
    ScrollIntoViewCommand,
    SelectCommand,
    SnapshotCommand,
    StateLoadCommand,
    StateSaveCommand,
    StorageClearCommand,
    StorageGetCommand,
    StorageSetCommand,
    TabCloseCommand,
    TabListCommand,
    TabNewCommand,
    TabSwitchCommand,
    TitleCommand,
    TraceStartCommand,
    TraceStopCommand,
    TypeCommand,
    UncheckCommand,
    UploadCommand,
    UrlCommand,
    ViewportCommand,
    WaitCommand,
    WheelCommand,
    error_response,
    success_response,
)

LOGGER = logging.getLogger(__name__)

C = TypeVar("C", bound=BaseCommand)
Handler = Callable[[Any, BrowserBackend], Awaitable[Any]]

HANDLERS: dict[type[BaseCommand], Handler] = {}


def handles(command_type: type[C]) -> Callable[[Callable[[C, BrowserBackend], Awaitable[Any]]], Handler]:
    def register(func: Callable[[C, BrowserBackend], Awaitable[Any]]) -> Handler:
        HANDLERS[command_type] = func
        return func

    return register


async def execute_command(command: BaseCommand, backend: BrowserBackend) -> Response:
    """Run ``command`` against ``backend`` and wrap the outcome in a response.

    Never raises: driver failures and capability gaps become error responses.
    """

    handler = HANDLERS.get(type(command))
    if handler is None:
        return error_response(command.id, f"Unknown action: {command.action}")
    try:
        data = await handler(command, backend)
    except AgentBrowserError as exc:
        LOGGER.warning("Command %s (%s) failed: %s", command.id, command.action, exc)
        return error_response(command.id, str(exc))
    except Exception as exc:
        LOGGER.exception("Unexpected failure executing %s", command.action)
        return error_response(command.id, str(exc) or exc.__class__.__name__)
    LOGGER.debug("Command %s (%s) succeeded", command.id, command.action)
    return success_response(command.id, data)


def _as_list(values: str | list[str]) -> list[str]:
    return values if isinstance(values, list) else [values]


@handles(LaunchCommand)
async def _launch(command: LaunchCommand, backend: BrowserBackend) -> Any:
    await backend.launch(command)
    return {"launched": True}


@handles(CloseCommand)
async def _close(command: CloseCommand, backend: BrowserBackend) -> Any:
    await backend.close()
    return {"closed": True}


@handles(NavigateCommand)
async def _navigate(command: NavigateCommand, backend: BrowserBackend) -> Any:
    return await backend.navigate(command.url, command.wait_until)


@handles(BackCommand)
async def _back(command: BackCommand, backend: BrowserBackend) -> Any:
    await backend.back()
    return {"navigated": "back"}


@handles(ForwardCommand)
async def _forward(command: ForwardCommand, backend: BrowserBackend) -> Any:
    await backend.forward()
    return {"navigated": "forward"}


@handles(ReloadCommand)
async def _reload(command: ReloadCommand, backend: BrowserBackend) -> Any:
    await backend.reload()
    return {"reloaded": True}


@handles(ClickCommand)
async def _click(command: ClickCommand, backend: BrowserBackend) -> Any:
    await backend.click(
        command.selector,
        button=command.button,
        click_count=command.click_count,
        delay=command.delay,
    )
    return {"clicked": command.selector}


@handles(DblclickCommand)
async def _dblclick(command: DblclickCommand, backend: BrowserBackend) -> Any:
    await backend.dblclick(command.selector)
    return {"clicked": command.selector}


@handles(TypeCommand)
async def _type(command: TypeCommand, backend: BrowserBackend) -> Any:
    await backend.type_text(
        command.selector, command.text, delay=command.delay, clear=bool(command.clear)
    )
    return {"typed": command.text}


@handles(FillCommand)
async def _fill(command: FillCommand, backend: BrowserBackend) -> Any:
    await backend.fill(command.selector, command.value)
    return {"filled": command.value}


@handles(HoverCommand)
async def _hover(command: HoverCommand, backend: BrowserBackend) -> Any:
    await backend.hover(command.selector)
    return {"hovered": command.selector}


@handles(FocusCommand)
async def _focus(command: FocusCommand, backend: BrowserBackend) -> Any:
    await backend.focus(command.selector)
    return {"focused": command.selector}


@handles(CheckCommand)
async def _check(command: CheckCommand, backend: BrowserBackend) -> Any:
    await backend.check(command.selector)
    return {"checked": command.selector}


@handles(UncheckCommand)
async def _uncheck(command: UncheckCommand, backend: BrowserBackend) -> Any:
    await backend.uncheck(command.selector)
    return {"unchecked": command.selector}


@handles(PressCommand)
async def _press(command: PressCommand, backend: BrowserBackend) -> Any:
    await backend.press(command.key, command.selector)
    return {"pressed": command.key}


@handles(SelectCommand)
async def _select(command: SelectCommand, backend: BrowserBackend) -> Any:
    selected = await backend.select(command.selector, _as_list(command.values))
    return {"selected": selected}


@handles(DragCommand)
async def _drag(command: DragCommand, backend: BrowserBackend) -> Any:
    await backend.drag(command.source, command.target)
    return {"dragged": True}


@handles(UploadCommand)
async def _upload(command: UploadCommand, backend: BrowserBackend) -> Any:
    files = _as_list(command.files)
    await backend.upload(command.selector, files)
    return {"uploaded": files}


@handles(ScrollCommand)
async def _scroll(command: ScrollCommand, backend: BrowserBackend) -> Any:
    await backend.scroll(command.direction, command.amount, command.selector)
    return {"scrolled": True}


@handles(ScrollIntoViewCommand)
async def _scroll_into_view(command: ScrollIntoViewCommand, backend: BrowserBackend) -> Any:
    await backend.scroll_into_view(command.selector)
    return {"scrolled": command.selector}


@handles(WaitCommand)
async def _wait(command: WaitCommand, backend: BrowserBackend) -> Any:
    await backend.wait(
        selector=command.selector,
        timeout=command.timeout,
        text=command.text,
        url=command.url,
        load_state=command.load_state,
    )
    return {"waited": True}


@handles(ScreenshotCommand)
async def _screenshot(command: ScreenshotCommand, backend: BrowserBackend) -> Any:
    return await backend.screenshot(
        path=command.path,
        full_page=bool(command.full_page),
        format=command.format,
        quality=command.quality,
        selector=command.selector,
    )


@handles(SnapshotCommand)
async def _snapshot(command: SnapshotCommand, backend: BrowserBackend) -> Any:
    options = SnapshotOptions(
        interactive=bool(command.interactive),
        max_depth=command.max_depth,
        compact=bool(command.compact),
        selector=command.selector,
    )
    result = await backend.snapshot(options)
    return {
        "snapshot": result.tree,
        "refs": result.refs_to_dict(),
        "stats": snapshot_stats(result.tree, result.refs),
    }


@handles(EvaluateCommand)
async def _evaluate(command: EvaluateCommand, backend: BrowserBackend) -> Any:
    return {"result": await backend.evaluate(command.script)}


@handles(ContentCommand)
async def _content(command: ContentCommand, backend: BrowserBackend) -> Any:
    return {"html": await backend.content(command.selector)}


@handles(GetTextCommand)
async def _get_text(command: GetTextCommand, backend: BrowserBackend) -> Any:
    return {"text": await backend.get_text(command.selector)}


@handles(UrlCommand)
async def _url(command: UrlCommand, backend: BrowserBackend) -> Any:
    return {"url": await backend.current_url()}


@handles(TitleCommand)
async def _title(command: TitleCommand, backend: BrowserBackend) -> Any:
    return {"title": await backend.title()}


@handles(IsVisibleCommand)
async def _is_visible(command: IsVisibleCommand, backend: BrowserBackend) -> Any:
    return {"visible": await backend.is_visible(command.selector)}


@handles(IsEnabledCommand)
async def _is_enabled(command: IsEnabledCommand, backend: BrowserBackend) -> Any:
    return {"enabled": await backend.is_enabled(command.selector)}


@handles(IsCheckedCommand)
async def _is_checked(command: IsCheckedCommand, backend: BrowserBackend) -> Any:
    return {"checked": await backend.is_checked(command.selector)}


@handles(GetByRoleCommand)
async def _get_by_role(command: GetByRoleCommand, backend: BrowserBackend) -> Any:
    await backend.get_by_role(command.role, command.subaction, name=command.name, value=command.value)
    return {"completed": command.subaction}


@handles(GetByTextCommand)
async def _get_by_text(command: GetByTextCommand, backend: BrowserBackend) -> Any:
    await backend.get_by_text(
        command.text, command.subaction, exact=bool(command.exact), value=command.value
    )
    return {"completed": command.subaction}


@handles(GetByLabelCommand)
async def _get_by_label(command: GetByLabelCommand, backend: BrowserBackend) -> Any:
    await backend.get_by_label(command.label, command.subaction, value=command.value)
    return {"completed": command.subaction}


@handles(TabNewCommand)
async def _tab_new(command: TabNewCommand, backend: BrowserBackend) -> Any:
    return await backend.new_tab(command.url)


@handles(TabListCommand)
async def _tab_list(command: TabListCommand, backend: BrowserBackend) -> Any:
    tabs = await backend.list_tabs()
    active = next((tab.index for tab in tabs if tab.active), 0)
    return {"tabs": [tab.to_dict() for tab in tabs], "active": active}


@handles(TabSwitchCommand)
async def _tab_switch(command: TabSwitchCommand, backend: BrowserBackend) -> Any:
    tab = await backend.switch_tab(command.index)
    return {"index": tab.index, "url": tab.url, "title": tab.title}


@handles(TabCloseCommand)
async def _tab_close(command: TabCloseCommand, backend: BrowserBackend) -> Any:
    remaining = await backend.close_tab(command.index)
    return {"closed": True, "remaining": remaining}


@handles(DialogCommand)
async def _dialog(command: DialogCommand, backend: BrowserBackend) -> Any:
    await backend.handle_dialog(command.response == "accept", command.prompt_text)
    return {"handled": command.response}


@handles(CookiesGetCommand)
async def _cookies_get(command: CookiesGetCommand, backend: BrowserBackend) -> Any:
    return {"cookies": await backend.cookies_get(command.urls)}


@handles(CookiesSetCommand)
async def _cookies_set(command: CookiesSetCommand, backend: BrowserBackend) -> Any:
    await backend.cookies_set(command.cookies)
    return {"set": len(command.cookies)}


@handles(CookiesClearCommand)
async def _cookies_clear(command: CookiesClearCommand, backend: BrowserBackend) -> Any:
    await backend.cookies_clear()
    return {"cleared": True}


@handles(StorageGetCommand)
async def _storage_get(command: StorageGetCommand, backend: BrowserBackend) -> Any:
    value = await backend.storage_get(command.type, command.key)
    if command.key:
        return {"key": command.key, "value": value}
    return {"data": value}


@handles(StorageSetCommand)
async def _storage_set(command: StorageSetCommand, backend: BrowserBackend) -> Any:
    await backend.storage_set(command.type, command.key, command.value)
    return {"set": True}


@handles(StorageClearCommand)
async def _storage_clear(command: StorageClearCommand, backend: BrowserBackend) -> Any:
    await backend.storage_clear(command.type)
    return {"cleared": True}


@handles(ViewportCommand)
async def _viewport(command: ViewportCommand, backend: BrowserBackend) -> Any:
    await backend.set_viewport(command.width, command.height)
    return {"width": command.width, "height": command.height}


@handles(GeolocationCommand)
async def _geolocation(command: GeolocationCommand, backend: BrowserBackend) -> Any:
    await backend.set_geolocation(command.latitude, command.longitude, command.accuracy)
    return {"latitude": command.latitude, "longitude": command.longitude}


@handles(OfflineCommand)
async def _offline(command: OfflineCommand, backend: BrowserBackend) -> Any:
    await backend.set_offline(command.offline)
    return {"offline": command.offline}


@handles(MouseMoveCommand)
async def _mouse_move(command: MouseMoveCommand, backend: BrowserBackend) -> Any:
    await backend.mouse_move(command.x, command.y)
    return {"moved": True}


@handles(MouseDownCommand)
async def _mouse_down(command: MouseDownCommand, backend: BrowserBackend) -> Any:
    await backend.mouse_down(command.button)
    return {"down": True}


@handles(MouseUpCommand)
async def _mouse_up(command: MouseUpCommand, backend: BrowserBackend) -> Any:
    await backend.mouse_up(command.button)
    return {"up": True}


@handles(WheelCommand)
async def _wheel(command: WheelCommand, backend: BrowserBackend) -> Any:
    await backend.wheel(command.delta_x, command.delta_y)
    return {"scrolled": True}


@handles(ConsoleCommand)
async def _console(command: ConsoleCommand, backend: BrowserBackend) -> Any:
    return {"messages": await backend.console_messages(bool(command.clear))}


@handles(ErrorsCommand)
async def _errors(command: ErrorsCommand, backend: BrowserBackend) -> Any:
    return {"errors": await backend.page_errors(bool(command.clear))}


@handles(FrameCommand)
async def _frame(command: FrameCommand, backend: BrowserBackend) -> Any:
    await backend.select_frame(command.selector)
    return {"frame": command.selector}


@handles(MainFrameCommand)
async def _main_frame(command: MainFrameCommand, backend: BrowserBackend) -> Any:
    await backend.main_frame()
    return {"frame": "main"}


@handles(TraceStartCommand)
async def _trace_start(command: TraceStartCommand, backend: BrowserBackend) -> Any:
    await backend.trace_start(
        screenshots=command.screenshots is not False,
        snapshots=command.snapshots is not False,
    )
    return {"tracing": True}


@handles(TraceStopCommand)
async def _trace_stop(command: TraceStopCommand, backend: BrowserBackend) -> Any:
    await backend.trace_stop(command.path)
    return {"path": command.path}


@handles(StateSaveCommand)
async def _state_save(command: StateSaveCommand, backend: BrowserBackend) -> Any:
    await backend.save_state(command.path)
    return {"path": command.path}


@handles(StateLoadCommand)
async def _state_load(command: StateLoadCommand, backend: BrowserBackend) -> Any:
    await backend.load_state(command.path)
    return {"loaded": command.path}


@handles(ScreencastStartCommand)
async def _screencast_start(command: ScreencastStartCommand, backend: BrowserBackend) -> Any:
    await backend.start_capture(command.to_options())
    return {"screencasting": True}


@handles(ScreencastStopCommand)
async def _screencast_stop(command: ScreencastStopCommand, backend: BrowserBackend) -> Any:
    await backend.stop_capture()
    return {"screencasting": False}


@handles(InputMouseCommand)
async def _input_mouse(command: InputMouseCommand, backend: BrowserBackend) -> Any:
    await backend.inject_mouse(command.to_event())
    return {"injected": True}


@handles(InputKeyboardCommand)
async def _input_keyboard(command: InputKeyboardCommand, backend: BrowserBackend) -> Any:
    await backend.inject_keyboard(command.to_event())
    return {"injected": True}


@handles(InputTouchCommand)
async def _input_touch(command: InputTouchCommand, backend: BrowserBackend) -> Any:
    await backend.inject_touch(command.to_event())
    return {"injected": True}
