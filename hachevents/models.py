from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class LocationType(str, Enum):
    ONLINE = "online"
    IN_PERSON = "in_person"


class City(str, Enum):
    TEHRAN = "tehran"
    MASHHAD = "mashhad"
    ISFAHAN = "isfahan"
    KARAJ = "karaj"
    SHIRAZ = "shiraz"
    TABRIZ = "tabriz"
    QOM = "qom"
    AHVAZ = "ahvaz"
    KERMANSHAH = "kermanshah"
    URMIA = "urmia"
    RASHT = "rasht"
    ZAHEDAN = "zahedan"
    HAMADAN = "hamadan"
    KERMAN = "kerman"
    YAZD = "yazd"


class Category(str, Enum):
    TECH = "tech"
    BUSINESS = "business"
    ART = "art"
    MUSIC = "music"
    SPORTS = "sports"
    FOOD = "food"
    EDUCATION = "education"
    NETWORKING = "networking"
    STARTUP = "startup"
    HEALTH = "health"
    OTHER = "other"


class RegistrationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


CITIES: Dict[City, str] = {
    City.TEHRAN: "تهران",
    City.MASHHAD: "مشهد",
    City.ISFAHAN: "اصفهان",
    City.KARAJ: "کرج",
    City.SHIRAZ: "شیراز",
    City.TABRIZ: "تبریز",
    City.QOM: "قم",
    City.AHVAZ: "اهواز",
    City.KERMANSHAH: "کرمانشاه",
    City.URMIA: "ارومیه",
    City.RASHT: "رشت",
    City.ZAHEDAN: "زاهدان",
    City.HAMADAN: "همدان",
    City.KERMAN: "کرمان",
    City.YAZD: "یزد",
}

CATEGORIES: Dict[Category, str] = {
    Category.TECH: "تکنولوژی",
    Category.BUSINESS: "کسب و کار",
    Category.ART: "هنر",
    Category.MUSIC: "موسیقی",
    Category.SPORTS: "ورزش",
    Category.FOOD: "غذا",
    Category.EDUCATION: "آموزش",
    Category.NETWORKING: "نتورکینگ",
    Category.STARTUP: "استارتاپ",
    Category.HEALTH: "سلامت",
    Category.OTHER: "سایر",
}

CATEGORY_ICONS: Dict[Category, str] = {
    Category.TECH: "💻",
    Category.BUSINESS: "💼",
    Category.ART: "🎨",
    Category.MUSIC: "🎵",
    Category.SPORTS: "⚽",
    Category.FOOD: "🍕",
    Category.EDUCATION: "📚",
    Category.NETWORKING: "🤝",
    Category.STARTUP: "🚀",
    Category.HEALTH: "💪",
    Category.OTHER: "✨",
}

STATUS_LABELS: Dict[RegistrationStatus, str] = {
    RegistrationStatus.PENDING: "در انتظار",
    RegistrationStatus.APPROVED: "تأیید شده",
    RegistrationStatus.REJECTED: "رد شده",
}


@dataclass
class TicketOption:
    id: str
    name: str
    price: int = 0
    description: str = ""
    requires_approval: bool = False
    capacity: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TicketOption":
        capacity = data.get("capacity")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            price=int(data.get("price") or 0),
            description=str(data.get("description") or ""),
            requires_approval=bool(data.get("requires_approval", False)),
            capacity=int(capacity) if capacity is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Event:
    id: str
    title: str
    description: Optional[str]
    date: str
    time: str
    location_type: LocationType
    location: Optional[str]
    link: Optional[str]
    capacity: Optional[int]
    cover_image: Optional[str]
    creator_id: str
    city: Optional[City]
    category: Category
    slug: str
    created_at: str
    updated_at: str
    tickets: List[TicketOption] = field(default_factory=list)

    def ticket_by_id(self, ticket_id: Optional[str]) -> Optional[TicketOption]:
        for ticket in self.tickets:
            if ticket.id == ticket_id:
                return ticket
        return None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["location_type"] = self.location_type.value
        payload["city"] = self.city.value if self.city else None
        payload["category"] = self.category.value
        return payload


@dataclass
class Registration:
    id: str
    event_id: str
    user_id: str
    ticket_id: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    phone: Optional[str]
    status: RegistrationStatus
    created_at: str

    @property
    def tracking_code(self) -> str:
        return self.id[:8].upper()

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        payload["tracking_code"] = self.tracking_code
        return payload


@dataclass
class Profile:
    id: str
    email: str
    full_name: Optional[str]
    avatar_url: Optional[str]
    created_at: str
    updated_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
