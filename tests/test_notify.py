"""Tests for the event notifiers."""

from ensemble.notify import MESSAGE_DELIVERED, TranscriptNotifier


async def test_transcript_appends_entries(tmp_path):
    path = tmp_path / "logs" / "transcript.md"
    notifier = TranscriptNotifier(str(path))

    await notifier.emit(MESSAGE_DELIVERED, "H", {"sender_id": "U", "content": "first"})
    await notifier.emit(MESSAGE_DELIVERED, "H", {"sender_id": "U", "content": "second"})

    text = path.read_text()
    assert text.count("`message_delivered`") == 2
    assert "`U` → `H`" in text
    assert text.index("first") < text.index("second")
