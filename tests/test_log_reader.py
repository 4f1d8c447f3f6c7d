from reforger_panel.log_reader import list_logs, log_path, read_from_cursor, read_tail


def _write(path, lines):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")


def test_list_logs(tmp_path):
    _write(tmp_path / "console.log", ["a"])
    (tmp_path / "notes.txt").write_text("x", encoding="utf-8")
    logs = list_logs(tmp_path)
    assert [entry["id"] for entry in logs] == ["console"]
    assert logs[0]["path"] == "logs/console.log"
    assert list_logs(tmp_path / "missing") == []


def test_log_path_rejects_unsafe_ids(tmp_path):
    _write(tmp_path / "console.log", ["a"])
    assert log_path(tmp_path, "console") == tmp_path / "console.log"
    assert log_path(tmp_path, "../console") is None
    assert log_path(tmp_path, ".hidden") is None
    assert log_path(tmp_path, "missing") is None


def test_tail_then_follow(tmp_path):
    path = tmp_path / "console.log"
    _write(path, [f"line {i}" for i in range(10)])

    chunk = read_tail(path, tail_lines=3)
    assert chunk.entries == ["line 7", "line 8", "line 9"]
    assert chunk.truncated is True

    with path.open("a", encoding="utf-8") as fh:
        fh.write("line 10\nline 1")  # second line not finished yet
    nxt = read_from_cursor(path, chunk.cursor)
    assert nxt.entries == ["line 10"]

    with path.open("a", encoding="utf-8") as fh:
        fh.write("1\n")
    last = read_from_cursor(path, nxt.cursor)
    assert last.entries == ["line 11"]


def test_cursor_paging(tmp_path):
    path = tmp_path / "console.log"
    _write(path, [f"line {i}" for i in range(5)])
    first = read_from_cursor(path, "", max_lines=2)
    assert first.entries == ["line 0", "line 1"]
    assert first.truncated is True
    rest = read_from_cursor(path, first.cursor, max_lines=10)
    assert rest.entries == ["line 2", "line 3", "line 4"]
    assert rest.truncated is False


def test_truncated_file_restarts_from_beginning(tmp_path):
    path = tmp_path / "console.log"
    _write(path, [f"line {i}" for i in range(20)])
    cursor = read_tail(path).cursor
    _write(path, ["fresh"])
    assert read_from_cursor(path, cursor).entries == ["fresh"]


def test_garbage_cursor_reads_from_start(tmp_path):
    path = tmp_path / "console.log"
    _write(path, ["a", "b"])
    assert read_from_cursor(path, "not-a-cursor!").entries == ["a", "b"]


def test_line_longer_than_page_is_served_in_pieces(tmp_path):
    path = tmp_path / "console.log"
    path.write_bytes(b"x" * 25)

    first = read_from_cursor(path, "", max_bytes=10)
    assert first.entries == ["x" * 10]
    assert first.truncated is True
    second = read_from_cursor(path, first.cursor, max_bytes=10)
    assert second.entries == ["x" * 10]

    # the short tail has no newline yet, so it waits for more output
    third = read_from_cursor(path, second.cursor, max_bytes=10)
    assert third.entries == []
    assert third.truncated is False
    assert third.cursor == second.cursor

    with path.open("ab") as fh:
        fh.write(b"\n")
    assert read_from_cursor(path, third.cursor, max_bytes=10).entries == ["x" * 5]
