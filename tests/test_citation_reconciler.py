"""Citation reconciliation: [N] markers in lesson text → source urls."""

from models.course_models import Citation
from services.citation_reconciler import find_markers, reconcile_citations


def _sources(count):
    return [Citation(index=i, url=f"https://example.org/{i}", domain="example.org") for i in range(1, count + 1)]


def test_find_markers_distinct():
    assert find_markers("a [1] b [2] c [1] [10]") == {1, 2, 10}
    assert find_markers("") == set()


def test_maps_used_markers_one_based():
    sources = _sources(3)
    result = reconcile_citations("Fact [1]. Another [3].", sources)
    assert result == {1: "https://example.org/1", 3: "https://example.org/3"}


def test_out_of_range_markers_dropped():
    result = reconcile_citations("[0] [2] [4] [99]", _sources(3))
    assert result == {2: "https://example.org/2"}


def test_every_key_within_source_range():
    sources = _sources(4)
    text = " ".join(f"[{n}]" for n in range(0, 12))
    result = reconcile_citations(text, sources)
    assert set(result) == {1, 2, 3, 4}
    assert all(1 <= key <= len(sources) for key in result)


def test_none_instead_of_empty_mapping():
    assert reconcile_citations("No markers here.", _sources(2)) is None
    assert reconcile_citations("Only invalid [7].", _sources(2)) is None
    assert reconcile_citations("Marker [1] but no sources.", []) is None
    assert reconcile_citations("Marker [1].", None) is None
