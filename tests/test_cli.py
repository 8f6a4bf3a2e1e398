"""
Tests for the CLI parser and the offline commands (jacks, dump, tone).
"""

import json

import pytest

from switchboard import cli, config
from switchboard.models import Conversation, UserMessage
from switchboard.storage.sqlite_store import SQLiteStore


@pytest.fixture
def cfg(tmp_path):
    config.reset_config()
    path = tmp_path / "config.yaml"
    path.write_text(
        f"storage:\n  sqlite_path: {tmp_path / 'sb.db'}\n"
        "mcp:\n  servers:\n    - name: docs\n      url: https://docs.example/mcp\n"
    )
    yield config.load_config(path)
    config.reset_config()


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("names, func", [
    (["patch", "chat"], cli.cmd_patch),
    (["jacks", "servers", "ls"], cli.cmd_jacks),
    (["tap", "log", "tail"], cli.cmd_tap),
    (["dump", "export"], cli.cmd_dump),
    (["tone", "banner"], cli.cmd_tone),
])
def test_aliases_share_handler(names, func):
    parser = cli.build_parser()
    for name in names:
        assert parser.parse_args([name]).func is func


def test_login_requires_server_id():
    parser = cli.build_parser()
    args = parser.parse_args(["auth", "docs", "--timeout", "30"])
    assert args.func is cli.cmd_login
    assert args.server_id == "docs"
    assert args.timeout == 30.0
    with pytest.raises(SystemExit):
        parser.parse_args(["login"])


def test_patch_options():
    args = cli.build_parser().parse_args(["chat", "-m", "a/b", "-s", "docs", "-s", "mail"])
    assert args.model == "a/b"
    assert args.server == ["docs", "mail"]
    assert args.conversation is None


def test_tap_options():
    args = cli.build_parser().parse_args(["tail", "-n", "5", "-r", "tool", "--no-follow"])
    assert args.last == 5
    assert args.channel == "tool"
    assert args.no_follow
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["tap", "-r", "nowhere"])


def test_no_command_prints_banner_and_help(capsys):
    cli.main([])
    out = capsys.readouterr().out
    assert "Patch the model through." in out
    assert "usage: switchboard" in out


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def test_jacks_add_list_remove(cfg, capsys):
    cli.main(["jacks", "add", "--url", "https://mail.example/mcp", "--name", "mail",
              "--header", "X-Team=ops", "--scope", "mail:send"])
    store = SQLiteStore(cfg["storage"]["sqlite_path"])
    server = store.get_server("mail")
    assert server.headers == {"X-Team": "ops"}
    assert server.oauth_scope == "mail:send"

    capsys.readouterr()
    cli.main(["ls"])
    out = capsys.readouterr().out
    assert "mail" in out
    assert "https://docs.example/mcp" in out

    cli.main(["servers", "remove", "--id", "mail"])
    assert store.get_server("mail") is None
    assert "Unplugged mail" in capsys.readouterr().out


def test_jacks_add_without_url_exits(cfg):
    with pytest.raises(SystemExit):
        cli.main(["jacks", "add", "--name", "x"])


def test_dump_writes_wire_format(cfg, tmp_path, capsys):
    store = SQLiteStore(cfg["storage"]["sqlite_path"])
    conv = Conversation(model="a/b", title="hello")
    store.ensure_conversation(conv)
    store.append_message(conv.id, UserMessage(content="hi"))
    out_path = tmp_path / "out.json"

    cli.main(["export", "-o", str(out_path), "--pretty"])

    data = json.loads(out_path.read_text())
    assert data[0]["conversation_id"] == conv.id
    assert data[0]["messages"] == [{"role": "user", "content": "hi"}]
    assert "Dumped 1 conversations" in capsys.readouterr().out
