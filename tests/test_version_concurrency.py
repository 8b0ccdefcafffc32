import threading

from app.docvault.db import session_scope
from app.docvault.modules.documents.models import DocumentVersion
from app.docvault.modules.documents.pipeline import NewDocument, NewVersion


def test_concurrent_appends_get_distinct_consecutive_versions(app, custody, users, ledger):
    owner = users["alice"]
    doc = custody.commit(
        NewDocument(owner_id=owner, title="Shared", plaintext=b"%PDF-1.4 v1", filename="shared.pdf")
    )

    n_writers = 8
    barrier = threading.Barrier(n_writers)
    results: list[int] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def writer(i: int) -> None:
        barrier.wait()
        try:
            r = custody.commit(
                NewVersion(
                    owner_id=owner,
                    document_id=doc.document_id,
                    plaintext=f"%PDF-1.4 revision from writer {i}".encode(),
                    filename="shared.pdf",
                )
            )
        except Exception as e:  # collected and asserted below
            with lock:
                errors.append(e)
            return
        with lock:
            results.append(r.version_number)

    threads = [threading.Thread(target=writer, args=(i,)) for i in range(n_writers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    assert sorted(results) == list(range(2, n_writers + 2))

    with session_scope(app) as s:
        numbers = sorted(
            v.version_number
            for v in s.query(DocumentVersion).filter(DocumentVersion.document_id == doc.document_id).all()
        )
    assert numbers == list(range(1, n_writers + 2))
    assert len([c for c in ledger.calls if c[0] == "append"]) == n_writers


def test_documents_do_not_share_version_sequences(custody, users):
    a = custody.commit(NewDocument(owner_id=users["alice"], title="A", plaintext=b"%PDF a", filename="a.pdf"))
    b = custody.commit(NewDocument(owner_id=users["bob"], title="B", plaintext=b"%PDF b", filename="b.pdf"))
    a2 = custody.commit(
        NewVersion(owner_id=users["alice"], document_id=a.document_id, plaintext=b"%PDF a2", filename="a.pdf")
    )
    b2 = custody.commit(
        NewVersion(owner_id=users["bob"], document_id=b.document_id, plaintext=b"%PDF b2", filename="b.pdf")
    )
    assert (a.version_number, a2.version_number) == (1, 2)
    assert (b.version_number, b2.version_number) == (1, 2)
    assert a.ledger_document_id != b.ledger_document_id
