import threading

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.portal.db import session_scope
from app.portal.models import User
from app.portal.modules.documents import registry, versions
from app.portal.modules.documents.errors import DocumentNotFound
from app.portal.modules.documents.metadata import parse_metadata
from app.portal.modules.documents.models import Document, DocumentVersion


def _file(n: int, tag: str = "") -> versions.VersionFile:
    return versions.VersionFile(
        file_name=f"proposal-v{n}{tag}.pdf",
        file_size=100 + n,
        file_type="application/pdf",
        storage_key=f"documents/{tag}{n:032x}",
    )


def _empty_document(app, owner_id: int) -> int:
    """A catalog row with no versions yet (current_version_number == 0)."""
    with session_scope(app) as s:
        d = registry.new_document(owner_id=owner_id, metadata=parse_metadata("research"), title="Hibah")
        s.add(d)
        s.flush()
        return d.id


def test_first_version_then_sequential_appends(app, owner_id):
    with session_scope(app) as s:
        d = registry.new_document(owner_id=owner_id, metadata=parse_metadata("personal"), title="CV")
        v1 = versions.create_first_version(s, d, _file(1), created_by=owner_id)
        assert v1.version_number == 1
        assert v1.change_description == "Initial upload"
        doc_id = d.id

    for n in (2, 3, 4):
        with session_scope(app) as s:
            v = versions.append_version(s, doc_id, _file(n), owner_id=owner_id, created_by=owner_id)
            assert v.version_number == n
            assert v.change_description == f"Version {n}"

    with session_scope(app) as s:
        chain = versions.list_versions(s, doc_id)
        assert [v.version_number for v in chain] == [4, 3, 2, 1]
        d = s.get(Document, doc_id)
        assert d.current_version_number == 4
        assert d.storage_key == _file(4).storage_key
        assert d.file_name == "proposal-v4.pdf"
        assert versions.get_version(s, doc_id, 2).storage_key == _file(2).storage_key
        assert versions.get_version(s, doc_id, 9) is None


def test_concurrent_appends_allocate_contiguous_numbers(app, owner_id):
    doc_id = _empty_document(app, owner_id)
    workers = 8
    barrier = threading.Barrier(workers)
    results: list[int] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def worker(i: int) -> None:
        try:
            barrier.wait()
            with session_scope(app) as s:
                v = versions.append_version(
                    s, doc_id, _file(i, tag="t"), owner_id=owner_id, created_by=owner_id
                )
                with lock:
                    results.append(v.version_number)
        except BaseException as e:  # surfaced by the assertion below
            with lock:
                errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(60)

    assert errors == []
    assert sorted(results) == list(range(1, workers + 1))
    with session_scope(app) as s:
        numbers = list(
            s.execute(
                select(DocumentVersion.version_number)
                .where(DocumentVersion.document_id == doc_id)
                .order_by(DocumentVersion.version_number)
            ).scalars()
        )
        assert numbers == list(range(1, workers + 1))
        assert s.get(Document, doc_id).current_version_number == workers


def test_append_to_deleted_or_foreign_document_is_not_found(app, owner_id):
    doc_id = _empty_document(app, owner_id)
    with session_scope(app) as s:
        other = s.query(User).filter(User.email == "other@example.com").one().id

    with session_scope(app) as s:
        with pytest.raises(DocumentNotFound):
            versions.append_version(s, doc_id, _file(1), owner_id=other, created_by=other)

    with session_scope(app) as s:
        registry.soft_delete(s, s.get(Document, doc_id))

    with session_scope(app) as s:
        with pytest.raises(DocumentNotFound):
            versions.append_version(s, doc_id, _file(1), owner_id=owner_id, created_by=owner_id)

    with session_scope(app) as s:
        with pytest.raises(DocumentNotFound):
            versions.append_version(s, 999999, _file(1), owner_id=owner_id, created_by=owner_id)


def test_duplicate_version_number_rejected_by_constraint(app, owner_id):
    doc_id = _empty_document(app, owner_id)
    with session_scope(app) as s:
        versions.append_version(s, doc_id, _file(1), owner_id=owner_id, created_by=owner_id)

    with pytest.raises(IntegrityError):
        with session_scope(app) as s:
            s.add(
                DocumentVersion(
                    document_id=doc_id,
                    version_number=1,
                    file_name="dup.pdf",
                    file_size=1,
                    file_type="application/pdf",
                    storage_key="documents/dup",
                    change_description="",
                    created_by_user_id=owner_id,
                )
            )
            s.flush()
