from __future__ import annotations

import pytest

from src.orchestrator.code_blocks import (
    FileEdit,
    collect_edits,
    normalize_path,
    parse_file_blocks,
)
from src.orchestrator.errors import InvalidRequestError


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("src/App.jsx", "src/App.jsx"),
        ("/src/App.jsx", "src/App.jsx"),
        ("/workspace/src/App.jsx", "src/App.jsx"),
        ("  src//components/./Button.jsx ", "src/components/Button.jsx"),
        ("src\\index.css", "src/index.css"),
    ],
)
def test_normalize_path(raw: str, expected: str) -> None:
    assert normalize_path(raw) == expected


@pytest.mark.parametrize("raw", ["", "/", "/workspace", "../etc/passwd", "src/../../x"])
def test_normalize_path_rejects_escapes(raw: str) -> None:
    with pytest.raises(ValueError):
        normalize_path(raw)


def test_normalize_path_honours_custom_workspace() -> None:
    assert normalize_path("/srv/app/index.html", workspace_dir="/srv/app") == "index.html"


def test_parse_file_blocks_strips_code_fences() -> None:
    text = (
        "Here you go:\n"
        '<file path="src/App.jsx">\n```jsx\nexport default function App() {}\n```\n</file>\n'
        "<file path='src/index.css'>\nbody { color: red; }\n</file>"
    )
    assert parse_file_blocks(text) == [
        FileEdit(path="src/App.jsx", content="export default function App() {}"),
        FileEdit(path="src/index.css", content="body { color: red; }"),
    ]


def test_parse_file_blocks_without_blocks() -> None:
    assert parse_file_blocks("no files here") == []


def test_collect_edits_merges_duplicates_keeping_last_content() -> None:
    edits = collect_edits(
        files=[
            {"path": "src/App.jsx", "content": "v1"},
            {"path": "src/Other.jsx", "content": "o"},
        ],
        response='<file path="src/App.jsx">v2</file>',
    )
    assert edits == [
        FileEdit(path="src/App.jsx", content="v2"),
        FileEdit(path="src/Other.jsx", content="o"),
    ]


def test_collect_edits_rejects_malformed_items() -> None:
    with pytest.raises(InvalidRequestError):
        collect_edits(files=[{"path": "a.js"}], response=None)
    with pytest.raises(InvalidRequestError):
        collect_edits(files=["a.js"], response=None)


def test_collect_edits_empty() -> None:
    assert collect_edits(files=None, response=None) == []


def test_collect_edits_merges_spellings_of_the_same_path() -> None:
    edits = collect_edits(
        files=[
            {"path": "src/New.jsx", "content": "v1"},
            {"path": "../escape.js", "content": "x"},
            {"path": "/workspace/src/New.jsx", "content": "v2"},
        ],
        response='<file path="/src/./New.jsx">v3</file>',
    )
    assert edits == [
        FileEdit(path="src/New.jsx", content="v3"),
        FileEdit(path="../escape.js", content="x"),
    ]
