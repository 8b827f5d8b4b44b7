import io

import pytest
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)
from botocore.stub import Stubber

from app.portal.modules.documents.committer import (
    OBJECT_KEY_PREFIX,
    CommitMetadata,
    ObjectStoreCommitter,
    classify_storage_error,
)
from app.portal.modules.documents.errors import (
    AUTH_ERROR,
    BUCKET_ERROR,
    CONNECTION_ERROR,
    UNKNOWN_ERROR,
    CommitError,
)
from app.portal.modules.documents.metadata import RelatedItem
from app.portal.modules.documents.staging import UploadStager
from app.portal.storage import LocalStorage, S3Storage


class UnreachableStorage(LocalStorage):
    """Local store whose network is down."""

    def ensure_bucket(self) -> None:
        raise EndpointConnectionError(endpoint_url="http://minio.invalid:9000")

    def put_file(self, key, path, *, content_type=None, metadata=None) -> None:
        raise EndpointConnectionError(endpoint_url="http://minio.invalid:9000")


@pytest.fixture()
def stager(tmp_path):
    return UploadStager(tmp_path / "staging", max_bytes=1024 * 1024)


@pytest.fixture()
def s3():
    storage = S3Storage(
        endpoint="minio.test",
        port=9000,
        use_ssl=False,
        region="us-east-1",
        bucket="accreditation-documents",
        access_key_id="test",
        secret_access_key="test",
    )
    with Stubber(storage.client) as stubber:
        yield storage, stubber


def _client_error(code: str, status: int = 400) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}}, "PutObject")


@pytest.mark.parametrize(
    "exc, expected",
    [
        (NoCredentialsError(), AUTH_ERROR),
        (_client_error("InvalidAccessKeyId", 403), AUTH_ERROR),
        (_client_error("SignatureDoesNotMatch", 403), AUTH_ERROR),
        (_client_error("NoSuchBucket", 404), BUCKET_ERROR),
        (_client_error("AccessDenied", 403), BUCKET_ERROR),
        (_client_error("InternalError", 500), UNKNOWN_ERROR),
        (EndpointConnectionError(endpoint_url="http://x"), CONNECTION_ERROR),
        (ConnectTimeoutError(endpoint_url="http://x"), CONNECTION_ERROR),
        (ReadTimeoutError(endpoint_url="http://x"), CONNECTION_ERROR),
        (TimeoutError(), CONNECTION_ERROR),
        (OSError("connect ECONNREFUSED 127.0.0.1:9000"), CONNECTION_ERROR),
        (ValueError("something odd"), UNKNOWN_ERROR),
    ],
)
def test_classify_storage_error(exc, expected):
    assert classify_storage_error(exc) == expected


def test_commit_local_stores_bytes_and_metadata(tmp_path, stager):
    storage = LocalStorage(root=tmp_path / "store", secret_key="k")
    committer = ObjectStoreCommitter(storage, presign_expiry=60)
    h = stager.stage(io.BytesIO(b"%PDF data"), original_name="Proposal Hibah.pdf", mime_type="application/pdf")

    c = committer.commit(h, CommitMetadata("research", 7, RelatedItem("research", "RP-12")))

    assert c.object_name.startswith(OBJECT_KEY_PREFIX)
    assert "Proposal" not in c.object_name
    assert c.bucket_name == "local"
    assert c.url and "/files/" in c.url
    assert c.file_size == 9
    assert c.file_extension == "pdf"
    assert not h.temp_path.exists()

    info = storage.head(c.object_name)
    assert info.content_type == "application/pdf"
    assert info.metadata["original-filename"] == "Proposal Hibah.pdf"
    assert info.metadata["uploaded-by"] == "7"
    assert info.metadata["related-item-id"] == "RP-12"
    assert storage.open(c.object_name).read() == b"%PDF data"

    d = c.to_dict()
    assert d["metadata"]["relatedItemType"] == "research"
    assert d["metadata"]["originalName"] == "Proposal Hibah.pdf"


def test_commit_unreachable_store_is_connection_error_and_keeps_staging(tmp_path, stager):
    committer = ObjectStoreCommitter(UnreachableStorage(root=tmp_path / "store", secret_key="k"))
    assert committer.ensure_bucket() is False

    h = stager.stage(io.BytesIO(b"data"), original_name="a.pdf", mime_type="application/pdf")
    with pytest.raises(CommitError) as ei:
        committer.commit(h, CommitMetadata("personal", 1))
    assert ei.value.error_type == CONNECTION_ERROR
    assert ei.value.retryable is True
    assert ei.value.http_status == 503
    # the caller decides whether to discard
    assert h.temp_path.exists()


def test_s3_commit_invalid_key_is_auth_error(s3, stager):
    storage, stubber = s3
    stubber.add_response("head_bucket", {}, {"Bucket": "accreditation-documents"})
    stubber.add_client_error("put_object", service_error_code="InvalidAccessKeyId", http_status_code=403)
    committer = ObjectStoreCommitter(storage)

    h = stager.stage(io.BytesIO(b"data"), original_name="a.pdf", mime_type="application/pdf")
    with pytest.raises(CommitError) as ei:
        committer.commit(h, CommitMetadata("personal", 1))
    assert ei.value.error_type == AUTH_ERROR
    assert ei.value.retryable is False


def test_s3_commit_missing_bucket_is_bucket_error(s3, stager):
    storage, stubber = s3
    stubber.add_response("head_bucket", {}, {"Bucket": "accreditation-documents"})
    stubber.add_client_error("put_object", service_error_code="NoSuchBucket", http_status_code=404)
    committer = ObjectStoreCommitter(storage)

    h = stager.stage(io.BytesIO(b"data"), original_name="a.pdf", mime_type="application/pdf")
    with pytest.raises(CommitError) as ei:
        committer.commit(h, CommitMetadata("personal", 1))
    assert ei.value.error_type == BUCKET_ERROR


def test_s3_commit_success(s3, stager):
    storage, stubber = s3
    stubber.add_response("head_bucket", {}, {"Bucket": "accreditation-documents"})
    stubber.add_response("put_object", {"ETag": '"abc"'})
    committer = ObjectStoreCommitter(storage, presign_expiry=3600)

    h = stager.stage(io.BytesIO(b"data"), original_name="cv.pdf", mime_type="application/pdf")
    c = committer.commit(h, CommitMetadata("personal", 3))

    stubber.assert_no_pending_responses()
    assert c.bucket_name == "accreditation-documents"
    assert c.url.startswith("http://minio.test:9000/accreditation-documents/documents/")
    assert "X-Amz-Expires=3600" in c.url
    assert not h.temp_path.exists()


def test_ensure_bucket_creates_missing_bucket(s3):
    storage, stubber = s3
    stubber.add_client_error("head_bucket", service_error_code="404", http_status_code=404)
    stubber.add_response("create_bucket", {}, {"Bucket": "accreditation-documents"})
    committer = ObjectStoreCommitter(storage)

    assert committer.ensure_bucket() is True
    assert committer.bucket_ready is True
    # idempotent: no further store calls
    assert committer.ensure_bucket() is True
    stubber.assert_no_pending_responses()


def test_bucket_check_retried_lazily_on_commit(s3, stager):
    storage, stubber = s3
    stubber.add_client_error("head_bucket", service_error_code="403", http_status_code=403)
    stubber.add_response("head_bucket", {}, {"Bucket": "accreditation-documents"})
    stubber.add_response("put_object", {"ETag": '"abc"'})
    committer = ObjectStoreCommitter(storage)

    assert committer.ensure_bucket() is False
    h = stager.stage(io.BytesIO(b"data"), original_name="cv.pdf", mime_type="application/pdf")
    committer.commit(h, CommitMetadata("personal", 3))
    assert committer.bucket_ready is True
