import json

from ladderocr.export import (
    all_text,
    page_records,
    safe_fname,
    write_json,
    write_per_document_txt,
    write_text,
)
from ladderocr.models import Document, Page


def sample_documents():
    img = Document(name="receipt.jpg", kind="image", pages=[Page(text="Total 42", confidence=90.0)])
    pdf = Document(name="contract.pdf", kind="paged", pages=[
        Page(text="Page one text", confidence=100.0),
        Page(error="Page budget spent (before load)", error_kind="budget_exceeded"),
    ])
    return [img, pdf]


def test_all_text_layout():
    out = all_text(sample_documents())
    assert out == (
        "# Image: receipt.jpg\nTotal 42\n\n"
        "# PDF: contract.pdf\n"
        "----- Page 1 -----\nPage one text\n\n"
        "----- Page 2 -----\nPage budget spent (before load)"
    )


def test_page_records_are_flat():
    recs = page_records(sample_documents())
    assert [(r["name"], r["page"]) for r in recs] == [
        ("receipt.jpg", 1), ("contract.pdf", 1), ("contract.pdf", 2),
    ]
    assert set(recs[0]) == {"name", "kind", "page", "confidence", "text", "error"}
    assert recs[2]["error"].startswith("Page budget")
    assert recs[2]["confidence"] is None


def test_write_text_and_json(tmp_path):
    docs = sample_documents()
    t = write_text(docs, tmp_path / "a" / "all.txt")
    assert t.read_text(encoding="utf-8").startswith("# Image: receipt.jpg")

    j = write_json(docs, tmp_path / "all.json")
    data = json.loads(j.read_text(encoding="utf-8"))
    assert data[1]["pages"][1]["error_kind"] == "budget_exceeded"

    flat = json.loads(write_json(docs, tmp_path / "flat.json", flat=True).read_text(encoding="utf-8"))
    assert len(flat) == 3


def test_per_document_txt_skips_empty_documents(tmp_path):
    docs = sample_documents() + [Document(name="blank.png", kind="image", pages=[Page()])]
    written = write_per_document_txt(docs, tmp_path)
    assert sorted(p.name for p in written) == ["contract.txt", "receipt.txt"]


def test_safe_fname():
    assert safe_fname("Báo cáo tháng 9.pdf") == "bao-cao-thang-9.pdf"
    assert safe_fname("") == "file"
    assert safe_fname("???") == "file"
