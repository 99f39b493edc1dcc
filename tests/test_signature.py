from render_engine.schemas import AccessContext, ChartSpecification, FilterSpec
from render_engine.services.compiler import compile_analytics_query
from render_engine.services.signature import QuerySignatureHasher

_ALL = AccessContext(user_id="admin", permission_scope="all")


def _chart(**overrides) -> ChartSpecification:
    payload = {
        "chart_id": "c1",
        "chart_type": "line",
        "data_source_id": 1,
        "measure": "Charges",
        "frequency": "Monthly",
        "start_date": "2024-01-01",
        "end_date": "2024-12-31",
    }
    payload.update(overrides)
    return ChartSpecification.model_validate(payload)


def test_signature_is_sha256_hex() -> None:
    signature = QuerySignatureHasher().hash(_chart(), _ALL)
    assert len(signature) == 64
    assert all(char in "0123456789abcdef" for char in signature)


def test_signature_ignores_presentation_fields() -> None:
    hasher = QuerySignatureHasher()
    base = hasher.hash(_chart(), _ALL)
    assert hasher.hash(_chart(chart_type="bar", chart_id="c2", chart_name="Other"), _ALL) == base
    assert hasher.hash(_chart(color_palette="blue", stacking_mode="stacked"), _ALL) == base
    assert hasher.hash(_chart(group_by="provider_name"), _ALL) == base


def test_signature_is_order_independent() -> None:
    hasher = QuerySignatureHasher()
    chart_a = _chart(
        advanced_filters=[
            {"field": "provider_name", "op": "in", "value": ["B", "A"]},
            {"field": "location", "op": "eq", "value": "North"},
        ],
        practice_uids=[3, 1, 2],
    )
    chart_b = _chart(
        advanced_filters=[
            FilterSpec(field="location", op="eq", value="North"),
            FilterSpec(field="provider_name", op="in", value=["A", "B"]),
        ],
        practice_uids=[2, 3, 1],
    )
    assert hasher.hash(chart_a, _ALL) == hasher.hash(chart_b, _ALL)


def test_signature_normalizes_dates_and_whitespace() -> None:
    hasher = QuerySignatureHasher()
    plain = hasher.hash(_chart(), _ALL)
    noisy = hasher.hash(_chart(measure=" Charges ", start_date="2024-01-01T00:00:00Z"), _ALL)
    assert plain == noisy


def test_signature_changes_with_fetch_affecting_fields() -> None:
    hasher = QuerySignatureHasher()
    base = hasher.hash(_chart(), _ALL)
    assert hasher.hash(_chart(measure="Payments"), _ALL) != base
    assert hasher.hash(_chart(frequency="Weekly"), _ALL) != base
    assert hasher.hash(_chart(end_date="2024-06-30"), _ALL) != base
    assert hasher.hash(_chart(data_source_id=2), _ALL) != base
    assert hasher.hash(_chart(practice_uids=[]), _ALL) != base
    assert hasher.hash(_chart(advanced_filters=[{"field": "location", "op": "eq", "value": "North"}]), _ALL) != base


def test_group_by_included_only_for_flagged_chart_types() -> None:
    hasher = QuerySignatureHasher(lambda chart_type: chart_type == "table")
    assert hasher.hash(_chart(chart_type="line", group_by="provider_name"), _ALL) == hasher.hash(_chart(chart_type="line"), _ALL)
    assert hasher.hash(_chart(chart_type="table", group_by="provider_name"), _ALL) != hasher.hash(_chart(chart_type="table"), _ALL)


def test_distinct_access_scopes_get_distinct_signatures() -> None:
    hasher = QuerySignatureHasher()
    org_a = AccessContext(user_id="u1", permission_scope="organization", accessible_practice_uids=[1, 2])
    org_b = AccessContext(user_id="u2", permission_scope="organization", accessible_practice_uids=[3])
    own = AccessContext(user_id="u3", permission_scope="own", provider_uid=42)

    signatures = {hasher.hash(_chart(), context) for context in (_ALL, org_a, org_b, own)}
    assert len(signatures) == 4

    same_scope = AccessContext(user_id="u9", permission_scope="organization", accessible_practice_uids=[2, 1])
    assert hasher.hash(_chart(), same_scope) == hasher.hash(_chart(), org_a)


def test_resolve_intersects_requested_practices_with_access_scope() -> None:
    hasher = QuerySignatureHasher()
    access = AccessContext(user_id="u1", permission_scope="organization", accessible_practice_uids=[1, 2, 3])
    query = hasher.resolve(_chart(practice_uids=[2, 3, 9]), access)
    assert query.practice_uids == [2, 3]

    denied = hasher.resolve(_chart(), AccessContext(user_id="u2", permission_scope="none"))
    assert denied.practice_uids == []

    own_without_provider = hasher.resolve(_chart(), AccessContext(user_id="u3", permission_scope="own"))
    assert own_without_provider.practice_uids == []
    assert own_without_provider.provider_uid is None


def _filtered(*filters: dict) -> ChartSpecification:
    return _chart(advanced_filters=list(filters))


def test_values_that_fetch_different_rows_get_different_signatures() -> None:
    hasher = QuerySignatureHasher()
    pairs = [
        (
            _filtered({"field": "practice_code", "op": "eq", "value": "007"}),
            _filtered({"field": "practice_code", "op": "eq", "value": "7"}),
        ),
        (
            _filtered({"field": "measure_value", "op": "between", "value": [10, 5]}),
            _filtered({"field": "measure_value", "op": "between", "value": [5, 10]}),
        ),
        (
            _filtered({"field": "Provider", "op": "eq", "value": "Dr A"}),
            _filtered({"field": "provider", "op": "eq", "value": "Dr A"}),
        ),
    ]
    for left, right in pairs:
        left_sql = compile_analytics_query(hasher.resolve(left, _ALL))
        right_sql = compile_analytics_query(hasher.resolve(right, _ALL))
        assert left_sql != right_sql
        assert hasher.hash(left, _ALL) != hasher.hash(right, _ALL)


def test_equal_signatures_compile_to_identical_sql() -> None:
    hasher = QuerySignatureHasher()
    left = _chart(
        measure=" Charges ",
        frequency="Monthly ",
        provider_name=" Dr A",
        advanced_filters=[
            {"field": "location", "op": "in", "value": ["South", "North", "South"]},
            {"field": "location", "op": "in", "value": ["North", "South"]},
        ],
    )
    right = _chart(
        measure="Charges",
        frequency="Monthly",
        provider_name="Dr A",
        advanced_filters=[{"field": "location", "op": "in", "value": ["North", "South"]}],
    )

    left_query = hasher.resolve(left, _ALL)
    assert left_query.measure == "Charges"
    assert left_query.frequency == "Monthly"
    assert left_query.provider_name == "Dr A"
    assert hasher.hash(left, _ALL) == hasher.hash(right, _ALL)
    assert compile_analytics_query(left_query) == compile_analytics_query(hasher.resolve(right, _ALL))
