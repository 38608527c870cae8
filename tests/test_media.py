import pytest

from mfdl.adapters.downloaders import ytdlp
from mfdl.utils.media import (
    FormatPolicy,
    content_type_for,
    display_filename,
    parse_format_id,
    planned_extension,
    safe_stem,
)


@pytest.mark.parametrize(
    "ext,ctype",
    [
        ("jpg", "image/jpeg"),
        ("JPEG", "image/jpeg"),
        ("png", "image/png"),
        ("webp", "image/webp"),
        ("gif", "image/gif"),
        ("mp3", "audio/mpeg"),
        ("m4a", "audio/mpeg"),
        ("mp4", "video/mp4"),
        ("webm", "video/webm"),
        ("mkv", "video/mp4"),
        ("", "video/mp4"),
    ],
)
def test_content_type_table(ext, ctype):
    assert content_type_for(ext) == ctype


def test_filename_from_title():
    assert safe_stem("My Clip!") == "My_Clip_"
    assert display_filename("My Clip!", "mp4") == "My_Clip_.mp4"
    assert len(safe_stem("a" * 200)) == 50
    assert display_filename(None, "mp3") == "download.mp3"


def test_format_id_parsing():
    assert parse_format_id("audio").policy is FormatPolicy.AUDIO
    c = parse_format_id("720p")
    assert c.policy is FormatPolicy.HEIGHT and c.max_height == 720
    assert parse_format_id("best").policy is FormatPolicy.BEST
    assert parse_format_id(None).policy is FormatPolicy.BEST


def test_planned_extension_table():
    best = parse_format_id(None)
    assert planned_extension("webm", best) == "mp4"
    assert planned_extension("m4a", best) == "mp3"
    assert planned_extension("png", best) == "png"
    assert planned_extension("webm", parse_format_id("audio")) == "mp3"


def test_format_args_height_cap():
    args = ytdlp.format_args(parse_format_id("720p"), "mp4")
    fmt = args[args.index("-f") + 1]
    assert fmt == "bestvideo[height<=720]+bestaudio/best[height<=720]/best"
    assert args[-2:] == ["--merge-output-format", "mp4"]


def test_format_args_audio_and_images():
    args = ytdlp.format_args(parse_format_id("audio"), "mp4")
    assert "-x" in args and args[args.index("--audio-format") + 1] == "mp3"
    assert ytdlp.format_args(parse_format_id("720p"), "jpg") == []
