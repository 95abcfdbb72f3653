from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from product_video import storage
from product_video.pipeline.errors import PlaybackUrlError


def test_parse_gcs_uri():
    assert storage.parse_gcs_uri("gs://bucket/videos/1/out.mp4") == ("bucket", "videos/1/out.mp4")


@pytest.mark.parametrize("uri", ["https://cdn/out.mp4", "gs://bucket", "gs:///key"])
def test_parse_invalid_gcs_uri(uri):
    with pytest.raises(PlaybackUrlError, match="Invalid GCS URI"):
        storage.parse_gcs_uri(uri)


def test_output_prefix():
    assert storage.output_prefix("videos-bucket", 1700000000000) == "gs://videos-bucket/videos/1700000000000/"


def test_signed_url_is_v4_get():
    client = MagicMock()
    blob = client.bucket.return_value.blob.return_value
    blob.generate_signed_url.return_value = "https://storage.googleapis.com/bucket/out.mp4?X-Goog-Signature=abc"

    url = storage.signed_gcs_url("gs://bucket/videos/1/out.mp4", ttl_days=7, client=client)

    assert url.startswith("https://storage.googleapis.com/bucket/out.mp4")
    client.bucket.assert_called_once_with("bucket")
    client.bucket.return_value.blob.assert_called_once_with("videos/1/out.mp4")
    blob.generate_signed_url.assert_called_once_with(
        version="v4", expiration=timedelta(days=7), method="GET",
    )


def test_signing_failure_is_playback_error():
    client = MagicMock()
    client.bucket.return_value.blob.return_value.generate_signed_url.side_effect = AttributeError(
        "you need a private key to sign credentials"
    )

    with pytest.raises(PlaybackUrlError, match="Could not sign"):
        storage.signed_gcs_url("gs://bucket/out.mp4", client=client)


def test_r2_publisher_copies_video():
    s3 = MagicMock()
    publisher = storage.R2Publisher(s3_client=s3, bucket="media", public_url="https://media.example.com/")
    response = MagicMock(content=b"mp4-bytes")

    with patch("product_video.storage.httpx.get", return_value=response) as get:
        url = publisher.publish("job-1", "https://signed.example.com/out.mp4")

    assert url == "https://media.example.com/videos/job-1.mp4"
    get.assert_called_once_with("https://signed.example.com/out.mp4", timeout=120, follow_redirects=True)
    s3.put_object.assert_called_once_with(
        Bucket="media", Key="videos/job-1.mp4", Body=b"mp4-bytes", ContentType="video/mp4",
    )
