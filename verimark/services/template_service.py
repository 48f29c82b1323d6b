import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from verimark.clients.storage_client import StorageClient
from verimark.db.mappers import db_to_template_record
from verimark.db.models import DesignTemplate
from verimark.exceptions import NoActiveTemplateError, RequestValidationError, TemplateNotFoundError
from verimark.models import Placement, PlacementMethod, TemplateRecord
from verimark.services.qr_embedder import QrEmbedder
from verimark.utils.logging_config import get_logger

logger = get_logger(__name__)

UPDATABLE_FIELDS = ("name", "qr_placement", "placeholder_color", "placeholder_text")


def _placement_box(qr_placement: Union[Placement, Dict[str, Any]]) -> Dict[str, int]:
    try:
        placement = (
            qr_placement
            if isinstance(qr_placement, Placement)
            else Placement.from_dict(qr_placement, method=PlacementMethod.TEMPLATE)
        )
    except ValueError as e:
        raise RequestValidationError(
            f"QR placement must include x, y, width, and height: {e}"
        ) from e
    if placement.x < 0 or placement.y < 0:
        raise RequestValidationError("QR placement must not start outside the design")
    if not placement.is_printable():
        raise RequestValidationError("QR placement is smaller than the minimum QR size")
    return placement.box()


class TemplateService:
    """Design template management scoped to one company per call."""

    def __init__(self, session: Session):
        self.session = session

    def _owned(self, company_id: int, template_id: int) -> DesignTemplate:
        template = (
            self.session.query(DesignTemplate)
            .filter(DesignTemplate.id == template_id, DesignTemplate.company_id == company_id)
            .first()
        )
        if template is None:
            raise TemplateNotFoundError()
        return template

    def list_templates(self, company_id: int) -> List[TemplateRecord]:
        """Return the company's templates, newest first."""
        templates = (
            self.session.query(DesignTemplate)
            .filter(DesignTemplate.company_id == company_id)
            .order_by(DesignTemplate.created_at.desc(), DesignTemplate.id.desc())
            .all()
        )
        return [db_to_template_record(t) for t in templates]

    def create_template(
        self,
        company_id: int,
        name: str,
        template_url: Optional[str],
        qr_placement: Union[Placement, Dict[str, Any]],
        placeholder_color: Optional[str] = None,
        placeholder_text: Optional[str] = None,
    ) -> TemplateRecord:
        """Create an inactive template."""
        if not name:
            raise RequestValidationError("Name and QR placement are required")
        try:
            template = DesignTemplate(
                company_id=company_id,
                name=name,
                template_url=template_url or None,
                qr_placement=_placement_box(qr_placement),
                placeholder_color=placeholder_color or None,
                placeholder_text=placeholder_text or None,
                is_active=False,
            )
            self.session.add(template)
            self.session.commit()
            logger.info(f"Created design template {template.id} for company {company_id}")
            return db_to_template_record(template)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Error creating design template: {str(e)}")
            raise

    def update_template(self, company_id: int, template_id: int, **fields) -> TemplateRecord:
        """
        Update the given fields of an owned template.

        Only keys present in ``fields`` are touched, so passing
        ``placeholder_color=None`` clears the color.
        """
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise RequestValidationError(f"Unknown template fields: {', '.join(sorted(unknown))}")

        template = self._owned(company_id, template_id)
        try:
            if fields.get("name"):
                template.name = fields["name"]
            if fields.get("qr_placement") is not None:
                template.qr_placement = _placement_box(fields["qr_placement"])
            if "placeholder_color" in fields:
                template.placeholder_color = fields["placeholder_color"]
            if "placeholder_text" in fields:
                template.placeholder_text = fields["placeholder_text"]
            self.session.commit()
            logger.info(f"Updated design template {template_id}")
            return db_to_template_record(template)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Error updating design template {template_id}: {str(e)}")
            raise

    def delete_template(self, company_id: int, template_id: int) -> None:
        template = self._owned(company_id, template_id)
        try:
            self.session.delete(template)
            self.session.commit()
            logger.info(f"Deleted design template {template_id}")
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Error deleting design template {template_id}: {str(e)}")
            raise

    def get_active_template(self, company_id: int) -> TemplateRecord:
        """
        Raises:
            NoActiveTemplateError: If the company has no active template
        """
        template = (
            self.session.query(DesignTemplate)
            .filter(DesignTemplate.company_id == company_id, DesignTemplate.is_active.is_(True))
            .first()
        )
        if template is None:
            raise NoActiveTemplateError()
        return db_to_template_record(template)

    def has_active_template(self, company_id: int) -> bool:
        return (
            self.session.query(DesignTemplate.id)
            .filter(DesignTemplate.company_id == company_id, DesignTemplate.is_active.is_(True))
            .first()
            is not None
        )

    def set_active_template(self, company_id: int, template_id: int) -> TemplateRecord:
        """
        Make ``template_id`` the company's only active template.

        One UPDATE sets ``is_active`` on every row of the company at once, so
        readers see either the previous or the new active template, never
        zero or two.
        """
        self._owned(company_id, template_id)
        try:
            self.session.query(DesignTemplate).filter(
                DesignTemplate.company_id == company_id
            ).update(
                {DesignTemplate.is_active: case((DesignTemplate.id == template_id, True), else_=False)},
                synchronize_session=False,
            )
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Error activating design template {template_id}: {str(e)}")
            raise

        self.session.expire_all()
        logger.info(f"Template {template_id} set as active for company {company_id}")
        return db_to_template_record(self._owned(company_id, template_id))

    def upload_template(
        self,
        company_id: int,
        filename: str,
        data: bytes,
        content_type: Optional[str],
        storage: StorageClient,
        embedder: Optional[QrEmbedder] = None,
    ) -> Dict[str, Any]:
        """
        Validate and store a design file.

        Returns:
            Dict with ``templateUrl``, ``metadata``, ``warnings`` and ``filename``

        Raises:
            RequestValidationError: If the file is missing or not a usable design
        """
        if not data:
            raise RequestValidationError("Design file is required")

        validation = (embedder or QrEmbedder()).validate_design(data)
        if not validation["valid"]:
            raise RequestValidationError(f"Invalid design file: {'; '.join(validation['errors'])}")

        extension = Path(filename or "").suffix.lstrip(".").lower()
        if not extension.isalnum():
            extension = validation["metadata"]["format"]
        stored_name = f"template_{int(time.time() * 1000)}.{extension}"
        path = f"templates/{company_id}/{stored_name}"
        url = storage.put(path, data, content_type or f"image/{validation['metadata']['format']}")

        return {
            "templateUrl": url,
            "metadata": validation["metadata"],
            "warnings": validation["warnings"],
            "filename": stored_name,
        }
