"""
Database Schemas for the R.E.S.T membership API

Each Pydantic model maps to a MongoDB collection with the lowercase class name.
Collections:
- user
- committeemember
- branch
- event
- gallerypost
- carousel
- content
- setting

Field names are camelCase because both frontends read the documents as-is.
These schemas are used for validation before insert and for documentation.
"""
from typing import Any, Dict, List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, EmailStr, Field, model_validator

MEMBER_ROLES = ("user", "admin")
MEMBERSHIP_STATUSES = ("pending", "approved")
COMMITTEE_ROLES = (
    "Chairman",
    "Vice Chairman",
    "Secretary",
    "Treasurer",
    "Assistant Secretary",
    "Member",
    "Advisor",
)
GALLERY_CATEGORIES = (
    "All Photos",
    "Meetings",
    "Social Events",
    "Cultural Programs",
    "Workshops",
    "Ceremonies",
)
CONTENT_PAGES = ("home", "about", "events", "gallery", "contact", "login", "membership", "footer", "global")
DEFAULT_WORKING_HOURS = "Sunday - Friday: 10:00 AM - 5:00 PM"


def _new_id() -> str:
    return str(ObjectId())


# Embedded pieces
class Attachment(BaseModel):
    """A stored file referenced from a document"""
    id: str = Field(default_factory=_new_id)
    url: str
    mimetype: str
    publicId: Optional[str] = None
    resourceType: Optional[str] = None


class CarouselImage(Attachment):
    alt: str = ""


class Contact(BaseModel):
    phone: str = Field(..., min_length=1)
    email: EmailStr


class BranchService(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)


class Program(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    schedule: str = ""


class TeamMember(BaseModel):
    """Branch staff entry; userId only borrows display data from a member"""
    id: str = Field(default_factory=_new_id)
    userId: Optional[str] = None
    name: Optional[str] = None
    position: Optional[str] = None
    experience: Optional[str] = None
    profilePic: str = ""
    profilePicId: Optional[str] = None  # set only when the picture was uploaded for this entry


# Members
class User(BaseModel):
    """
    Users collection schema
    Roles:
    - admin: runs the admin console
    - user: association member
    """
    employeeId: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1, description="First name")
    surname: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    province: str = Field(..., min_length=1)
    district: str = Field(..., min_length=1)
    municipality: str = Field(..., min_length=1)
    wardNumber: str = Field(..., min_length=1)
    tole: str = Field(..., min_length=1)
    telephoneNumber: str = Field(..., min_length=1)
    mobileNumber: str = Field(..., min_length=1)
    dob: str = Field(..., min_length=1)
    postAtRetirement: str = Field(..., min_length=1)
    pensionLeaseNumber: str = Field(..., min_length=1)
    office: str = Field(..., min_length=1)
    serviceStartDate: str = Field(..., min_length=1)
    serviceRetirementDate: str = Field(..., min_length=1)
    membershipNumber: str = Field(..., min_length=1)
    registrationNumber: str = Field(..., min_length=1)
    dateOfFillUp: str = Field(..., min_length=1)
    place: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., description="BCrypt password hash (server-side only)")
    role: Literal["admin", "user"] = "user"
    membershipStatus: Literal["pending", "approved"] = "pending"
    refreshToken: Optional[str] = None
    profilePic: str = ""
    profilePicId: Optional[str] = None
    files: List[Attachment] = Field(default_factory=list, max_length=1)


class CommitteeMember(BaseModel):
    name: Optional[str] = None
    role: Optional[Literal[COMMITTEE_ROLES]] = None
    bio: Optional[str] = None
    committeeTitle: Optional[str] = None
    startDate: Optional[str] = Field(None, description='e.g. "2064/4/16"')
    endDate: Optional[str] = Field(None, description='e.g. "2065/5/27" or "Current"')
    profilePic: str = ""
    profilePicId: Optional[str] = None  # None when the picture is borrowed from the linked member
    userId: Optional[str] = None


# Directory and publishing
class Branch(BaseModel):
    name: str = Field(..., min_length=1)
    slug: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    mapLink: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    contact: Contact
    workingHours: str = DEFAULT_WORKING_HOURS
    services: List[BranchService] = Field(default_factory=list)
    uniquePrograms: List[Program] = Field(default_factory=list)
    teamMembers: List[TeamMember] = Field(default_factory=list)
    heroImage: str = ""
    heroImageId: Optional[str] = None
    isActive: bool = True
    order: int = 0
    createdBy: str
    updatedBy: Optional[str] = None


class Event(BaseModel):
    title: str = Field(..., min_length=1, description="Stored lowercase, unique")
    description: str = Field(..., min_length=1, description="Stored lowercase")
    date: Optional[str] = None
    time: Optional[str] = None
    location: Optional[str] = None
    files: List[Attachment] = Field(default_factory=list, max_length=10)


class GalleryPost(BaseModel):
    title: str = Field(..., min_length=1)
    category: Literal[GALLERY_CATEGORIES] = "All Photos"
    date: str = Field(..., min_length=1)
    images: List[Attachment] = Field(default_factory=list)


class Carousel(BaseModel):
    title: str = Field(..., min_length=1)
    type: Literal["home", "branch"] = "home"
    branch: Optional[str] = None
    images: List[CarouselImage] = Field(default_factory=list, max_length=10)
    isActive: bool = True
    order: int = 0

    @model_validator(mode="after")
    def branch_required_for_branch_type(self):
        if self.type == "branch" and not self.branch:
            raise ValueError("Branch is required for branch type carousel")
        return self


class Content(BaseModel):
    key: str = Field(..., min_length=1, description="Unique, lowercase")
    page: Literal[CONTENT_PAGES]
    section: str = Field(..., min_length=1)
    title: Optional[str] = None
    content: str = Field(..., min_length=1)
    type: Literal["text", "html", "json"] = "text"
    order: int = 0
    isActive: bool = True


class Setting(BaseModel):
    key: str = Field(..., min_length=1)
    value: Any
    description: Optional[str] = None


# Request bodies
class LoginBody(BaseModel):
    email: str
    password: str


class RefreshBody(BaseModel):
    refreshToken: Optional[str] = None


class ForgotPasswordBody(BaseModel):
    email: Optional[str] = None


class ResetPasswordBody(BaseModel):
    resetToken: Optional[str] = None
    newPassword: Optional[str] = None


class PasswordBody(BaseModel):
    password: Optional[str] = None


class BulkImportBody(BaseModel):
    members: List[Optional[Dict[str, Any]]] = Field(default_factory=list)


class CarouselUpdateBody(BaseModel):
    title: Optional[str] = None
    isActive: Optional[bool] = None
    order: Optional[int] = None


class ContentBody(BaseModel):
    key: Optional[str] = None
    page: Optional[str] = None
    section: Optional[str] = None
    title: Optional[str] = None
    content: Optional[str] = None
    type: Optional[str] = None
    order: Optional[int] = None
    isActive: Optional[bool] = None


class ContentBatchBody(BaseModel):
    contents: List[ContentBody]


class SettingBody(BaseModel):
    key: Optional[str] = None
    value: Any = None
    description: Optional[str] = None
