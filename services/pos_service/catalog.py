import logging
from typing import Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from services.pos_service.models import Branch, Client, Product, Service, Staff

logger = logging.getLogger(__name__)

SERVICE_CATEGORIES: Dict[str, str] = {
    "all": "All Services",
    "facial": "Facial",
    "massage": "Massage",
    "manicure": "Manicure",
    "pedicure": "Pedicure",
    "hair": "Hair Care",
    "body": "Body Treatments",
    "other": "Other",
}


def _search_filter(model, search_term: str):
    pattern = f"%{search_term.strip()}%"
    return or_(model.name.ilike(pattern), model.description.ilike(pattern))


class CatalogRepository:
    """Read-only lookups over services and retail products."""

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def find_service(self, service_id: int) -> Optional[Service]:
        """Get an active service by id."""
        return (
            self.db.query(Service)
            .filter(Service.id == service_id, Service.is_active.is_(True))
            .first()
        )

    def find_product(self, product_id: int) -> Optional[Product]:
        """Get an active, priced product by id."""
        return (
            self.db.query(Product)
            .filter(
                Product.id == product_id,
                Product.is_active.is_(True),
                Product.selling_price.isnot(None),
            )
            .first()
        )

    def list_active_services(
        self,
        branch_id: int,
        category: Optional[str] = None,
        search_term: Optional[str] = None,
    ) -> List[Service]:
        """Active services offered at the branch, optionally narrowed by category and search."""
        query = (
            self.db.query(Service)
            .filter(Service.branches.any(Branch.id == branch_id))
            .filter(Service.is_active.is_(True))
        )
        if category and category != "all":
            query = query.filter(Service.category == category)
        if search_term and search_term.strip():
            query = query.filter(_search_filter(Service, search_term))
        return query.order_by(Service.name).all()

    def list_available_products(
        self,
        branch_id: int,
        category: Optional[str] = None,
        search_term: Optional[str] = None,
    ) -> List[Product]:
        """In-stock, priced, active products held by the branch."""
        query = self.db.query(Product).filter(
            Product.branch_id == branch_id,
            Product.is_active.is_(True),
            Product.selling_price.isnot(None),
            Product.current_stock > 0,
        )
        if category and category != "all":
            query = query.filter(Product.category == category)
        if search_term and search_term.strip():
            query = query.filter(_search_filter(Product, search_term))
        return query.order_by(Product.name).all()

    @staticmethod
    def service_categories() -> Dict[str, str]:
        return dict(SERVICE_CATEGORIES)


class StaffDirectory:
    """Active staff lookups scoped to a branch."""

    def __init__(self, db: Session):
        self.db = db

    def list_active_staff(self, branch_id: int) -> List[Staff]:
        return (
            self.db.query(Staff)
            .filter(Staff.branches.any(Branch.id == branch_id))
            .filter(Staff.status == "active")
            .order_by(Staff.name)
            .all()
        )

    def get_active_staff(self, staff_id: int) -> Optional[Staff]:
        return self.db.query(Staff).filter(Staff.id == staff_id, Staff.status == "active").first()


class ClientDirectory:
    def __init__(self, db: Session):
        self.db = db

    def find_client(self, client_id: int) -> Optional[Client]:
        return self.db.query(Client).filter(Client.id == client_id).first()
