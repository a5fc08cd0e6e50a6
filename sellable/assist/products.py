import logging
import re
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

LOGGER = logging.getLogger(__name__)

PRODUCT_ID_PATTERNS = [
    re.compile(r"marketplace/item/(\d+)", re.IGNORECASE),
    re.compile(r"marketplace/item\.php\?id=(\d+)", re.IGNORECASE),
    re.compile(r"item/(\d+)", re.IGNORECASE),
]

# (attribute key, label) pairs, detected by field presence
VEHICLE_FIELDS = [
    ('make', 'Make'),
    ('model', 'Model'),
    ('year', 'Year'),
    ('mileage', 'Mileage'),
    ('transmission', 'Transmission'),
    ('fuel_type', 'Fuel type'),
    ('exterior_color', 'Exterior color'),
]
PROPERTY_FIELDS = [
    ('property_type', 'Property type'),
    ('bedrooms', 'Bedrooms'),
    ('bathrooms', 'Bathrooms'),
    ('square_meters', 'Area (m²)'),
    ('square_feet', 'Area (sq ft)'),
    ('rent_period', 'Rent period'),
]
VEHICLE_MARKERS = {'mileage', 'transmission', 'fuel_type', 'make'}
PROPERTY_MARKERS = {'bedrooms', 'bathrooms', 'square_meters', 'square_feet', 'property_type'}


def extract_product_id_from_url(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    for pattern in PRODUCT_ID_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def _snake_case(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).replace('-', '_').replace(' ', '_').lower()


@dataclass
class ProductDetails:
    product_id: Optional[str] = None
    title: Optional[str] = None
    price: Optional[str] = None
    condition: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    location: Optional[str] = None
    images: List[str] = field(default_factory=list)
    attributes: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Optional[Dict[str, Any]]) -> Optional["ProductDetails"]:
        """
        Builds product details from the scraper's dict.

        Images are taken from ``allImages``, then ``images``, then ``imageUrls``;
        any key that is not a known field ends up in ``attributes``.
        """
        if not raw:
            return None
        if isinstance(raw, ProductDetails):
            return raw

        images = []
        for key in ('allImages', 'images', 'imageUrls'):
            candidate = raw.get(key)
            if isinstance(candidate, list) and candidate:
                images = [img.get('url') if isinstance(img, dict) else img for img in candidate]
                images = [img for img in images if isinstance(img, str) and img]
                break

        known = {'id', 'productId', 'product_id', 'title', 'price', 'condition', 'description',
                 'category', 'location', 'allImages', 'images', 'imageUrls', 'attributes'}
        attributes = {}
        for key, value in (raw.get('attributes') or {}).items():
            attributes[_snake_case(key)] = value
        for key, value in raw.items():
            if key not in known and value not in (None, '', [], {}):
                attributes.setdefault(_snake_case(key), value)

        price = raw.get('price')
        return cls(
            product_id=raw.get('id') or raw.get('productId') or raw.get('product_id'),
            title=raw.get('title'),
            price=str(price) if price not in (None, '') else None,
            condition=raw.get('condition'),
            description=raw.get('description'),
            category=raw.get('category'),
            location=raw.get('location'),
            images=images,
            attributes=attributes,
        )

    def is_vehicle(self) -> bool:
        return bool(VEHICLE_MARKERS & set(self.attributes))

    def is_property(self) -> bool:
        return bool(PROPERTY_MARKERS & set(self.attributes))

    def summary(self) -> str:
        lines = []
        for label, value in (('Title', self.title), ('Price', self.price), ('Condition', self.condition),
                             ('Location', self.location), ('Description', self.description),
                             ('Category', self.category)):
            if value:
                lines.append(f"{label}: {value}")

        if self.is_vehicle():
            lines.extend(self._attribute_lines("Vehicle details", VEHICLE_FIELDS))
        if self.is_property():
            lines.extend(self._attribute_lines("Property details", PROPERTY_FIELDS))
        return "\n".join(lines)

    def _attribute_lines(self, heading: str, fields: List) -> List[str]:
        lines = [f"{label}: {self.attributes[key]}" for key, label in fields
                 if self.attributes.get(key) not in (None, '')]
        if lines:
            return [f"{heading}:"] + [f"- {line}" for line in lines]
        return []

    def reduced(self) -> "ProductDetails":
        """
        Title and price only, used when a thread already knows the product.
        """
        return ProductDetails(product_id=self.product_id, title=self.title, price=self.price)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
