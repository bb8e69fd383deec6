from __future__ import annotations

import pytest

from backend.db.models import NormalizationOverride, Product
from backend.services.overrides import (
    OverrideError,
    create_override,
    delete_override,
    load_overrides,
    update_override,
    validate_field_path,
)


@pytest.fixture
def product(db):
    row = Product(slug="uns-60u", name="UNS 60U", specs={"volume_gal": 17})
    db.add(row)
    db.commit()
    return row


def test_validate_field_path_accepts_columns_and_nested_dict_paths():
    assert validate_field_path("product", " name ") == "name"
    assert validate_field_path("product", "specs.dimensions.width_cm") == "specs.dimensions.width_cm"
    assert validate_field_path("plant", "care.difficulty") == "care.difficulty"


@pytest.mark.parametrize(
    "canonical_type,path",
    [
        ("product", ""),
        ("product", "specs..width"),
        ("product", "specs.width-cm"),
        ("product", "nope"),
        ("product", "name.first"),
        ("offer", "specs.volume"),
        ("product", "specs." + "x" * 200),
    ],
)
def test_validate_field_path_rejects_bad_paths(canonical_type, path):
    with pytest.raises(OverrideError):
        validate_field_path(canonical_type, path)


def test_create_requires_reason_and_actor(db, product):
    with pytest.raises(OverrideError, match="reason"):
        create_override(db, canonical_type="product", canonical_id=product.id, field_path="name", value="X", reason=" ", actor="ops")
    with pytest.raises(OverrideError, match="actor"):
        create_override(db, canonical_type="product", canonical_id=product.id, field_path="name", value="X", reason="fix", actor="")
    with pytest.raises(OverrideError, match="not found"):
        create_override(db, canonical_type="product", canonical_id=999, field_path="name", value="X", reason="fix", actor="ops")


def test_one_override_per_field(db, product):
    row = create_override(
        db, canonical_type="product", canonical_id=product.id, field_path="specs.volume_gal", value=18, reason="measured", actor="ops"
    )
    assert row.id is not None
    assert row.actor_user_id == "ops"

    with pytest.raises(OverrideError, match="already targets"):
        create_override(
            db, canonical_type="product", canonical_id=product.id, field_path="specs.volume_gal", value=19, reason="again", actor="ops"
        )
    assert db.query(NormalizationOverride).count() == 1


def test_update_and_delete(db, product):
    row = create_override(
        db, canonical_type="product", canonical_id=product.id, field_path="name", value="UNS 60-U", reason="typo", actor="ops"
    )

    updated = update_override(db, row.id, value="UNS 60U Rimless", reason="official name", actor="editor")
    assert updated.value == "UNS 60U Rimless"
    assert updated.actor_user_id == "editor"

    loaded = load_overrides(db, "product", [product.id])
    assert [(o.path, o.value) for o in loaded[product.id]] == [("name", "UNS 60U Rimless")]
    assert load_overrides(db, "product", []) == {}

    with pytest.raises(OverrideError):
        delete_override(db, row.id, actor="")
    assert delete_override(db, row.id, actor="editor") is True
    assert delete_override(db, row.id, actor="editor") is False

    with pytest.raises(OverrideError, match="not found"):
        update_override(db, row.id, value=1, reason="gone", actor="ops")
