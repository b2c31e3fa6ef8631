from nimbus.mentions import build_message_content, expand_mentions, find_mentions
from nimbus.models import ImageAttachment


def test_find_mentions_requires_extension():
    assert find_mentions("see @src/app.py and @docs/README.md but not @someone") == [
        "src/app.py",
        "docs/README.md",
    ]


def test_expand_prepends_file_blocks(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("print('hi')", encoding="utf-8")

    expanded = expand_mentions("explain @src/app.py", tmp_path)

    assert expanded == '<file path="src/app.py">\nprint(\'hi\')\n</file>\n\nexplain @src/app.py'


def test_missing_files_are_skipped(tmp_path):
    assert expand_mentions("look at @nope.py", tmp_path) == "look at @nope.py"


def test_large_files_are_truncated(tmp_path):
    (tmp_path / "big.txt").write_text("a" * 50, encoding="utf-8")

    expanded = expand_mentions("@big.txt", tmp_path, max_chars=10)

    assert "a" * 10 + "\n... (truncated)\n</file>" in expanded
    assert "a" * 11 not in expanded


def test_absolute_mentions_resolve_directly(tmp_path):
    target = tmp_path / "notes.md"
    target.write_text("notes", encoding="utf-8")

    expanded = expand_mentions(f"read @{target}", tmp_path / "elsewhere")

    assert f'<file path="{target}">\nnotes\n</file>' in expanded


def test_build_message_content_with_images():
    assert build_message_content("hello") == "hello"

    parts = build_message_content("hello", [ImageAttachment(data="QUJD", mime="image/jpeg")])

    assert parts[0].text == "hello"
    assert parts[1].type == "image"
    assert parts[1].image_url == "data:image/jpeg;base64,QUJD"
