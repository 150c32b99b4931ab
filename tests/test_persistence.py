"""
Tests for the Redis grid store, the object store and the channel codec.
Redis and S3 clients are MagicMocks.
"""

import json
from unittest.mock import MagicMock

import pytest
import redis
from botocore.exceptions import ClientError

from conftest import make_grid
from models.channel import ChannelKind
from models.grid import SLOT_COUNT
from runtime.errors import DistributionFailure, PersistenceReadFailure, UploadFailure
from runtime.persistence.grid_codec import decode_channels, encode_channels
from runtime.persistence.object_store import ObjectStore, is_remote_ref
from runtime.persistence.redis_store import GridRedisStore


def client_error(op="PutObject"):
    return ClientError({"Error": {"Code": "500", "Message": "boom"}}, op)


# -----------------------------
# Codec
# -----------------------------

def test_missing_channels_decode_to_empty_values():
    grid = decode_channels("g", {})
    assert grid.videos == [None] * SLOT_COUNT
    assert grid.contributions == []


def test_takes_channel_alone_is_decoded():
    payloads = encode_channels(make_grid(takes=[["videos/1.webm", None, None]]))
    grid = decode_channels("g", {ChannelKind.TAKES: payloads[ChannelKind.TAKES]})
    assert grid.slots[0].takes.take1 == "videos/1.webm"
    assert grid.slots[0].video is None


@pytest.mark.parametrize(
    "raw",
    [
        {ChannelKind.GRID: "[1, 2]"},
        {ChannelKind.GRID: "{"},
        {ChannelKind.CONTRIBUTIONS: '[{"slotIndex": 99, "ownerEmail": "a@x"}]'},
        {ChannelKind.TAKES: json.dumps(["x"] * SLOT_COUNT)},
        {ChannelKind.GRID: json.dumps([5] + [None] * (SLOT_COUNT - 1))},
        {ChannelKind.TAKES: json.dumps([{"take1": ["a"]}] + [None] * (SLOT_COUNT - 1))},
    ],
)
def test_corrupt_channels_raise(raw):
    with pytest.raises(PersistenceReadFailure):
        decode_channels("g", raw)


# -----------------------------
# Redis
# -----------------------------

def test_save_writes_all_channels_in_one_transaction():
    client = MagicMock()
    pipe = client.pipeline.return_value
    store = GridRedisStore(redis_client=client)

    assert store.save_grid("grid_1", make_grid("grid_1", videos=["videos/a.webm"]))

    client.pipeline.assert_called_once_with(transaction=True)
    keys = [c[0][0] for c in pipe.set.call_args_list]
    assert keys == ["boogie:grid:grid_1", "boogie:takes:grid_1", "boogie:contributions:grid_1"]
    pipe.execute.assert_called_once()


def test_save_failure_returns_false():
    client = MagicMock()
    client.pipeline.return_value.execute.side_effect = redis.ConnectionError("gone")
    assert GridRedisStore(redis_client=client).save_grid("g", make_grid("g")) is False


def test_load_round_trips_saved_payloads():
    grid = make_grid("grid_1", videos=["videos/a.webm"])
    payloads = encode_channels(grid)
    client = MagicMock()
    client.mget.return_value = [payloads[k] for k in ChannelKind]

    assert GridRedisStore(redis_client=client).load_grid("grid_1") == grid


def test_load_survives_redis_errors():
    client = MagicMock()
    client.mget.side_effect = redis.TimeoutError("slow")
    store = GridRedisStore(redis_client=client)

    with pytest.raises(PersistenceReadFailure):
        store.fetch_grid("g")
    assert store.load_grid("g").videos == [None] * SLOT_COUNT


def test_finalize_queue_round_trip(monkeypatch):
    monkeypatch.setenv("FINALIZE_JOB_QUEUE", "q:jobs")
    client = MagicMock()
    store = GridRedisStore(redis_client=client)

    assert store.push_finalize_job({"generation_id": "g"}) == "q:jobs"
    client.rpush.assert_called_once_with("q:jobs", json.dumps({"generation_id": "g"}))

    client.blpop.return_value = ("q:jobs", json.dumps({"generation_id": "g"}))
    assert store.pop_finalize_job(timeout=1) == {"generation_id": "g"}
    client.blpop.return_value = None
    assert store.pop_finalize_job(timeout=1) is None


def test_completed_list_merges_results():
    client = MagicMock()
    client.lrange.return_value = [
        json.dumps({"grid": make_grid("grid_2").to_dict(), "result": {"status": "queued"}}),
        "not json",
        json.dumps({"grid": make_grid("grid_1").to_dict(), "result": {"status": "queued"}}),
    ]
    client.hgetall.return_value = {"grid_1": json.dumps({"status": "success", "url": "https://x"})}

    records = GridRedisStore(redis_client=client).list_completed(10)

    assert [r["grid"]["generationId"] for r in records] == ["grid_2", "grid_1"]
    assert records[0]["result"] == {"status": "queued"}
    assert records[1]["result"]["url"] == "https://x"


def test_lazy_store_without_url_fails_on_use():
    store = GridRedisStore(lazy=True)
    with pytest.raises(RuntimeError):
        store.redis


# -----------------------------
# Object store
# -----------------------------

@pytest.fixture
def s3():
    return MagicMock()


@pytest.fixture
def objects(s3):
    return ObjectStore(
        endpoint="https://r2.example.com", bucket="boogie", access_key="k", secret_key="s", client=s3
    )


def test_remote_ref_detection():
    assert is_remote_ref("videos/grid_1_0_video.webm")
    assert is_remote_ref("https://cdn.example.com/a.webm")
    assert not is_remote_ref("/tmp/recording.webm")
    assert not is_remote_ref("")


def test_key_from_ref(objects):
    assert objects.key_from_ref("videos/a.webm") == "videos/a.webm"
    assert objects.key_from_ref("https://r2.example.com/boogie/videos/a.webm?sig=1") == "videos/a.webm"
    assert objects.key_from_ref("https://elsewhere.com/a.webm") is None


def test_upload_error_is_wrapped(objects, s3, tmp_path):
    s3.upload_file.side_effect = client_error()
    with pytest.raises(UploadFailure):
        objects.upload_file(tmp_path / "a.webm", "videos/a.webm")


def test_publish_returns_public_url(objects, s3, tmp_path):
    url = objects.publish(tmp_path / "m.mp4", "mosaics/m.mp4")
    assert url == "https://r2.example.com/boogie/mosaics/m.mp4"
    s3.upload_file.assert_called_once()


def test_publish_failure_is_distribution_failure(objects, s3, tmp_path):
    s3.upload_file.side_effect = client_error()
    with pytest.raises(DistributionFailure):
        objects.publish(tmp_path / "m.mp4", "mosaics/m.mp4")


def test_presigned_url(objects, s3):
    s3.generate_presigned_url.return_value = "https://signed"
    assert objects.presigned_url("videos/a.webm") == "https://signed"
    assert objects.presigned_url("https://cdn.example.com/a.webm") == "https://cdn.example.com/a.webm"

    s3.generate_presigned_url.side_effect = client_error("GetObject")
    assert objects.presigned_url("videos/a.webm") is None
