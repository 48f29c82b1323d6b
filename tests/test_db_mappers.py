from types import SimpleNamespace

from verimark.db.mappers import db_to_product_record, db_to_template_record
from verimark.models import PlacementMethod


def test_db_to_template_record(db_session, active_template):
    record = db_to_template_record(active_template)

    assert record.id == active_template.id
    assert record.name == "Spring banner"
    assert record.is_active is True
    assert record.qr_placement.method == PlacementMethod.TEMPLATE
    assert record.qr_placement.box() == {"x": 400, "y": 400, "width": 200, "height": 200}
    assert record.to_dict()["qr_placement"] == {"x": 400, "y": 400, "width": 200, "height": 200}
    assert record.to_dict()["created_at"] is not None


def test_db_to_template_record_rounds_stored_floats():
    orm_template = SimpleNamespace(
        id=5,
        company_id=1,
        name="Imported",
        template_url=None,
        qr_placement={"x": 10.4, "y": 20.6, "width": 120.0, "height": 119.5},
        placeholder_color=None,
        placeholder_text=None,
        is_active=None,
        created_at=None,
    )

    record = db_to_template_record(orm_template)

    assert record.qr_placement.box() == {"x": 10, "y": 21, "width": 120, "height": 120}
    assert record.is_active is False
    assert record.to_dict()["created_at"] is None


def test_db_to_product_record(db_session, products):
    record = db_to_product_record(products[0])

    assert record.product_id == "P-1"
    assert record.serial_number == "SN-001"
    assert record.anchor_status == "pending"
    assert record.to_dict()["qr_hash"] == products[0].qr_hash
