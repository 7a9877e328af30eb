"""
Unit tests for data models.
"""

from models import DownloadTask, FailureKind, Quality, TaskState, Transport


def test_download_task_defaults():
    task = DownloadTask(task_id=1, chat_id=42, url="https://vm.tiktok.com/abc/")
    assert task.state == TaskState.IDLE
    assert task.quality == Quality.H265
    assert task.file_path is None
    assert task.download_attempts == 0
    assert task.upload_attempts == 0
    assert task.error_message is None
    assert not task.is_audio


def test_audio_task_is_audio():
    task = DownloadTask(task_id=1, chat_id=42, url="https://x", quality=Quality.AUDIO)
    assert task.is_audio


def test_quality_from_value():
    assert Quality.from_value("h264") == Quality.H264
    assert Quality.from_value(" AUDIO ") == Quality.AUDIO
    assert Quality.from_value("best") == Quality.H265
    assert Quality.from_value(None) == Quality.H265


def test_enum_values():
    assert TaskState.DONE.value == "done"
    assert TaskState.FAILED.value == "failed"
    assert Transport.BOT_API.value == "bot_api"
    assert Transport.MTPROTO.value == "mtproto"
    assert FailureKind.PRIVATE.value == "private"
