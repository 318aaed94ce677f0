"""Tests for the filesystem media store."""

import pytest

from chatrelay.errors import NotFoundError
from chatrelay.media.store import MediaStore, sanitize_filename


class TestSanitizeFilename:
    def test_keeps_safe_names(self):
        assert sanitize_filename("photo.jpg") == "photo.jpg"

    def test_strips_directories_and_unsafe_chars(self):
        assert sanitize_filename("../../etc/pass wd.TXT") == "pass_wd.txt"
        assert sanitize_filename("C:\\Users\\me\\report (1).pdf") == "report_1_.pdf"

    def test_fallback_when_nothing_left(self):
        assert sanitize_filename("///", fallback_stem="image-1234", extension="jpg") == "image-1234.jpg"

    def test_random_when_no_fallback(self):
        name = sanitize_filename(None)
        assert name
        assert "/" not in name

    def test_enforces_extension_when_missing(self):
        assert sanitize_filename("voice", extension=".ogg") == "voice.ogg"

    def test_existing_extension_wins(self):
        assert sanitize_filename("clip.mov", extension="mp4") == "clip.mov"

    def test_bounds_length(self):
        name = sanitize_filename("a" * 500 + ".pdf")
        assert len(name) <= 96 + 4


class TestMediaStore:
    def test_inbound_layout(self, tmp_path):
        store = MediaStore(tmp_path)
        assert store.inbound_path("original", "msg-1", "a b.jpg") == "inbound/original/msg-1/a_b.jpg"
        assert store.inbound_path("thumbnail", "msg-1", "a.jpg") == "inbound/thumbnail/msg-1/a.jpg"

    def test_unknown_kind_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            MediaStore(tmp_path).inbound_path("secret", "m", "a.jpg")

    def test_outbound_paths_are_unique(self, tmp_path):
        store = MediaStore(tmp_path)
        first = store.outbound_path("doc.pdf")
        second = store.outbound_path("doc.pdf")
        assert first != second
        assert first.startswith("outbound/original/")
        assert first.endswith("-doc.pdf")

    def test_write_read_exists(self, tmp_path):
        store = MediaStore(tmp_path)
        rel = store.write("inbound/original/m/a.bin", b"payload")

        assert store.read(rel) == b"payload"
        assert store.exists(rel)
        # no temp files left behind
        assert [p.name for p in (tmp_path / "inbound/original/m").iterdir()] == ["a.bin"]

    def test_write_overwrites_atomically(self, tmp_path):
        store = MediaStore(tmp_path)
        store.write("x/a.bin", b"one")
        store.write("x/a.bin", b"two")
        assert store.read("x/a.bin") == b"two"

    def test_traversal_is_not_found(self, tmp_path):
        store = MediaStore(tmp_path / "root")
        with pytest.raises(NotFoundError):
            store.resolve("../outside.txt")
        with pytest.raises(NotFoundError):
            store.write("../../evil.txt", b"x")
        assert not store.exists("../outside.txt")

    def test_read_missing(self, tmp_path):
        with pytest.raises(NotFoundError):
            MediaStore(tmp_path).read("nope.bin")

    def test_ensure_directories(self, tmp_path):
        store = MediaStore(tmp_path)
        store.ensure_directories()
        for sub in ("original", "thumbnail", "preview", "placeholder"):
            assert (tmp_path / "inbound" / sub).is_dir()
        assert (tmp_path / "outbound" / "original").is_dir()
