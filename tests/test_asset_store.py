"""Tests for content-addressed asset storage and thumbnails."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError
from PIL import Image

from reposync.storage.asset_store import AssetStore, file_digests, guess_mime_type
from reposync.storage.thumbnails import make_thumbnail


def not_found() -> ClientError:
    return ClientError(
        {"Error": {"Code": "404", "Message": "Not Found"}, "ResponseMetadata": {"HTTPStatusCode": 404}},
        "HeadObject",
    )


@pytest.fixture
def png(tmp_path):
    path = tmp_path / "cover.png"
    Image.new("RGB", (400, 200), color="red").save(path)
    return path


def test_asset_key_layout():
    store = AssetStore("bucket", "pub/", client=MagicMock())

    assert store.asset_key("abcdef123") == "pub/binaries/ab/cd/abcdef123"


def test_put_skips_upload_when_etag_matches(tmp_path):
    path = tmp_path / "file.bin"
    path.write_bytes(b"hello world")
    digests = file_digests(path)
    client = MagicMock()
    client.head_object.return_value = {"ETag": f'"{digests["md5"]}"'}
    store = AssetStore("bucket", "pub", client=client)

    asset_id = store.put(path)

    assert asset_id == digests["sha256"]
    client.put_object.assert_not_called()


def test_put_uploads_missing_object(tmp_path):
    path = tmp_path / "file.txt"
    path.write_bytes(b"hello world")
    digests = file_digests(path)
    client = MagicMock()
    client.head_object.side_effect = not_found()
    client.put_object.return_value = {"ETag": f'"{digests["md5"]}"'}
    store = AssetStore("bucket", "pub", client=client)

    store.put(path, {"width": 10})

    kwargs = client.put_object.call_args.kwargs
    assert kwargs["Key"] == store.asset_key(digests["sha256"])
    assert kwargs["Metadata"]["width"] == "10"
    assert kwargs["Metadata"]["mime_type"] == "text/plain"
    assert kwargs["Metadata"]["original_path"].endswith("file.txt")


def test_put_rejects_checksum_mismatch(tmp_path):
    path = tmp_path / "file.bin"
    path.write_bytes(b"hello world")
    client = MagicMock()
    client.head_object.side_effect = not_found()
    client.put_object.return_value = {"ETag": '"0000"'}
    store = AssetStore("bucket", "pub", client=client)

    with pytest.raises(RuntimeError, match="etag"):
        store.put(path)


def test_head_object_errors_other_than_missing_propagate(tmp_path):
    path = tmp_path / "file.bin"
    path.write_bytes(b"hello world")
    client = MagicMock()
    client.head_object.side_effect = ClientError(
        {"Error": {"Code": "403", "Message": "Forbidden"}}, "HeadObject"
    )
    store = AssetStore("bucket", "pub", client=client)

    with pytest.raises(ClientError):
        store.put(path)


def test_put_image_reports_dimensions(png):
    client = MagicMock()
    client.head_object.side_effect = not_found()
    client.put_object.return_value = {"ETag": f'"{file_digests(png)["md5"]}"'}
    store = AssetStore("bucket", "pub", client=client)

    data = store.put_image(png)

    assert data["image_type"] == "png"
    assert (data["width"], data["height"]) == (400, 200)
    assert data["asset_id"] == file_digests(png)["sha256"]


def test_put_image_svg_has_no_dimensions(tmp_path):
    svg = tmp_path / "logo.svg"
    svg.write_text('<svg xmlns="http://www.w3.org/2000/svg" width="10" height="10"/>')
    client = MagicMock()
    client.head_object.return_value = {"ETag": f'"{file_digests(svg)["md5"]}"'}
    store = AssetStore("bucket", "pub", client=client)

    data = store.put_image(svg)

    assert data["image_type"] == "svg+xml"
    assert "width" not in data


def test_put_image_rejects_non_images(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("just text")
    store = AssetStore("bucket", "pub", client=MagicMock())

    with pytest.raises(ValueError, match="Non-image"):
        store.put_image(path)


def test_guess_mime_type_sniffs_content(tmp_path, png):
    disguised = tmp_path / "cover.dat"
    disguised.write_bytes(png.read_bytes())

    assert guess_mime_type(disguised) == "image/png"


def test_make_thumbnail_bounds_width(png, tmp_path):
    dest = make_thumbnail(png, tmp_path / "thumb.png", width=150)

    with Image.open(dest) as thumb:
        assert thumb.size == (150, 75)


def test_make_thumbnail_keeps_narrow_images(tmp_path):
    small = tmp_path / "small.png"
    Image.new("RGBA", (100, 50)).save(small)

    dest = make_thumbnail(small, tmp_path / "thumb.png", width=150)

    with Image.open(dest) as thumb:
        assert thumb.size == (100, 50)
