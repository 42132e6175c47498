import enum

class Country(str, enum.Enum):
    origin = "ORIGIN"
    destination = "DESTINATION"

class UnitState(str, enum.Enum):
    received_origin = "received_origin"
    in_transit_origin = "in_transit_origin"
    in_transit_destination = "in_transit_destination"
    available_destination = "available_destination"
    reserved = "reserved"
    sold = "sold"
    expired = "expired"
    damaged = "damaged"

class MovementType(str, enum.Enum):
    receipt = "RECEIPT"
    transfer = "TRANSFER"
    reservation = "RESERVATION"
    release = "RELEASE"
    extension = "EXTENSION"
    sale = "SALE"
    adjustment = "ADJUSTMENT"
    expiry = "EXPIRY"
    damage = "DAMAGE"

class DocumentKind(str, enum.Enum):
    quote = "QUOTE"
    sale = "SALE"
    purchase_order = "PURCHASE_ORDER"
    transfer = "TRANSFER"

class TransferStatus(str, enum.Enum):
    preparing = "PREPARING"
    in_transit = "IN_TRANSIT"
    received = "RECEIVED"
    cancelled = "CANCELLED"

class RequirementStatus(str, enum.Enum):
    pending = "PENDING"
    ordered = "ORDERED"
    cancelled = "CANCELLED"

class AvailabilityStatus(str, enum.Enum):
    available = "available"
    partial = "partial"
    no_stock = "no_stock"

class StockSource(str, enum.Enum):
    destination = "destination"
    origin_traveler = "origin_traveler"
    origin_warehouse = "origin_warehouse"
    virtual = "virtual"
