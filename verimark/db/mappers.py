from verimark.db.models import DesignTemplate as ORMDesignTemplate
from verimark.db.models import Product as ORMProduct
from verimark.models import Placement, PlacementMethod, ProductRecord, TemplateRecord


def db_to_template_record(orm_template: ORMDesignTemplate) -> TemplateRecord:
    return TemplateRecord(
        id=orm_template.id,
        company_id=orm_template.company_id,
        name=orm_template.name,
        template_url=orm_template.template_url,
        qr_placement=Placement.from_dict(
            orm_template.qr_placement,
            method=PlacementMethod.TEMPLATE,
            confidence=100.0,
        ),
        placeholder_color=orm_template.placeholder_color,
        placeholder_text=orm_template.placeholder_text,
        is_active=bool(orm_template.is_active),
        created_at=orm_template.created_at,
    )


def db_to_product_record(orm_product: ORMProduct) -> ProductRecord:
    return ProductRecord(
        id=orm_product.id,
        company_id=orm_product.company_id,
        product_id=orm_product.product_id,
        name=orm_product.name,
        serial_number=orm_product.serial_number,
        batch_number=orm_product.batch_number,
        qr_hash=orm_product.qr_hash,
        anchor_status=orm_product.anchor_status,
        ledger_transaction_id=orm_product.ledger_transaction_id,
        ledger_topic_id=orm_product.ledger_topic_id,
    )
