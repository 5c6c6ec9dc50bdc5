"""
Database Schemas for AssetVerse

Each Pydantic model represents a MongoDB collection. Documents are stored with
camelCase keys (the web client's contract), so models are dumped by alias.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


class Role(str, Enum):
    HR = "hr"
    EMPLOYEE = "employee"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    RETURNED = "returned"


class AssignmentStatus(str, Enum):
    ASSIGNED = "assigned"
    RETURNED = "returned"


class AffiliationStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class Document(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        arbitrary_types_allowed=True,
    )


class CompanyAffiliation(Document):
    company_name: str
    company_logo: Optional[str] = None
    hr_email: EmailStr
    approved_by: EmailStr
    approved_at: datetime


class User(Document):
    """
    Users collection schema
    Collection name: "users"
    packageLimit/currentEmployees only matter for HR accounts.
    """
    email: EmailStr = Field(..., description="Verified principal email, unique")
    name: Optional[str] = None
    photo: Optional[str] = None
    date_of_birth: Optional[str] = None
    role: Role
    company_name: Optional[str] = None
    company_logo: Optional[str] = None
    package_limit: Optional[int] = Field(None, ge=0)
    current_employees: int = Field(0, ge=0)
    company_affiliations: List[CompanyAffiliation] = Field(default_factory=list)


class Asset(Document):
    """
    Company inventory line
    Collection name: "assets"
    """
    product_name: str
    product_type: str = Field(..., description="Returnable | Non-returnable")
    product_image: Optional[str] = None
    product_quantity: int = Field(..., gt=0, description="Total units owned")
    available_quantity: int = Field(..., ge=0, description="Units not currently assigned")
    hr_email: EmailStr
    company_name: str
    date_added: datetime


class AssetRequest(Document):
    """
    Employee asset requests
    Collection name: "requests"
    """
    asset_id: ObjectId
    asset_name: str
    asset_type: str
    asset_image: Optional[str] = None
    requester_name: Optional[str] = None
    requester_email: EmailStr
    hr_email: EmailStr
    company_name: str
    request_date: datetime
    request_status: RequestStatus = RequestStatus.PENDING
    note: str = ""
    approval_date: Optional[datetime] = None
    processed_by: Optional[EmailStr] = None
    return_date: Optional[datetime] = None


class AssignedAsset(Document):
    """
    Assets handed out on approval
    Collection name: "assignedAssets"
    """
    request_id: ObjectId
    asset_id: ObjectId
    asset_name: str
    asset_type: str
    asset_image: Optional[str] = None
    employee_email: EmailStr
    employee_name: Optional[str] = None
    hr_email: EmailStr
    company_name: str
    assignment_date: datetime
    return_date: Optional[datetime] = None
    status: AssignmentStatus = AssignmentStatus.ASSIGNED


class EmployeeAffiliation(Document):
    """
    Employee <-> HR company link, never deleted
    Collection name: "employeeAffiliations"
    """
    employee_email: EmailStr
    employee_name: Optional[str] = None
    hr_email: EmailStr
    company_name: str
    company_logo: Optional[str] = None
    affiliation_date: datetime
    status: AffiliationStatus = AffiliationStatus.ACTIVE


class Package(Document):
    """
    Seat packages (read-only catalog)
    Collection name: "packages"
    """
    name: str
    price: float = Field(..., ge=0)
    employee_limit: int = Field(..., gt=0)
    features: List[str] = Field(default_factory=list)


class Payment(Document):
    """
    Append-only payment ledger, one row per processor transaction
    Collection name: "payments"
    """
    transaction_id: str
    hr_email: EmailStr
    package_id: str
    package_name: str
    employee_limit: int
    amount: float
    payment_date: datetime
    status: str = "completed"
    applied: bool = False
