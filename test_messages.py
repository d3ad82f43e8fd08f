import pytest

from web.messages import (
    ChatAbort,
    ChatCommand,
    ProtocolError,
    ShellInit,
    ShellInput,
    ShellResize,
    Unrecognized,
    parse_chat_message,
    parse_shell_message,
)


def test_parse_shell_init():
    msg = parse_shell_message(
        '{"type": "init", "projectPath": "/p", "sessionId": "abc", "hasSession": true, "cols": 100, "rows": 30}'
    )
    assert msg == ShellInit(project_path="/p", session_id="abc", has_session=True, cols=100, rows=30)


def test_parse_shell_init_minimal():
    assert parse_shell_message('{"type": "init"}') == ShellInit()


def test_parse_shell_input_and_resize():
    assert parse_shell_message('{"type": "input", "data": "ls\\r"}') == ShellInput(data="ls\r")
    assert parse_shell_message('{"type": "resize", "cols": 80.0, "rows": 24}') == ShellResize(cols=80, rows=24)


@pytest.mark.parametrize("raw, error", [
    ("{oops", "Invalid JSON"),
    ("[1, 2]", "Message must be a JSON object"),
    ('{"type": "input"}', "'data' must be a string"),
    ('{"type": "resize", "cols": true, "rows": 3}', "'cols' must be an integer"),
    ('{"type": "resize", "cols": 3}', "'rows' must be an integer"),
    ('{"type": "resize", "cols": NaN, "rows": 3}', "'cols' must be an integer"),
    ('{"type": "resize", "cols": 3, "rows": Infinity}', "'rows' must be an integer"),
    ('{"type": "init", "cols": -Infinity, "rows": 3}', "'cols' must be an integer"),
])
def test_shell_protocol_errors(raw, error):
    with pytest.raises(ProtocolError) as exc:
        parse_shell_message(raw)
    assert str(exc.value).startswith(error)


def test_unknown_types():
    assert parse_shell_message('{"type": "launch"}') == Unrecognized(type="launch")
    assert parse_chat_message('{"data": 1}') == Unrecognized(type="")


def test_parse_chat_messages():
    assert parse_chat_message(
        '{"type": "command", "command": "fix it", "options": {"projectPath": "/p", "sessionId": "s"}}'
    ) == ChatCommand(command="fix it", options={"projectPath": "/p", "sessionId": "s"})
    assert parse_chat_message('{"type": "claude-command", "command": null}') == ChatCommand(command="")
    assert parse_chat_message('{"type": "abort", "sessionId": "s"}') == ChatAbort(session_id="s")
    assert parse_chat_message('{"type": "abort-session"}') == ChatAbort(session_id="")


def test_chat_protocol_errors():
    with pytest.raises(ProtocolError):
        parse_chat_message('{"type": "command", "command": 5}')
    with pytest.raises(ProtocolError):
        parse_chat_message(b"\xff\xfe")
