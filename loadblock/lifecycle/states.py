from enum import Enum


class BoLStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    PICKED_UP = "picked_up"
    EN_ROUTE = "en_route"
    DELIVERED = "delivered"
    UNPAID = "unpaid"
    PAID = "paid"


class PartyRole(str, Enum):
    SHIPPER = "shipper"
    CONSIGNEE = "consignee"
    CARRIER = "carrier"
    BROKER = "broker"
    ADMIN = "admin"


class ApprovalParty(str, Enum):
    SHIPPER = "shipper"
    CARRIER = "carrier"


class RejectionCategory(str, Enum):
    MISSING_INFORMATION = "missing_information"
    INCORRECT_DETAILS = "incorrect_details"
    CARGO_ISSUES = "cargo_issues"
    REGULATORY_COMPLIANCE = "regulatory_compliance"
    PRICING_TERMS = "pricing_terms"
    OTHER = "other"


REJECTION_LABELS = {
    RejectionCategory.MISSING_INFORMATION: "Missing Information",
    RejectionCategory.INCORRECT_DETAILS: "Incorrect Details",
    RejectionCategory.CARGO_ISSUES: "Cargo Issues",
    RejectionCategory.REGULATORY_COMPLIANCE: "Regulatory Compliance",
    RejectionCategory.PRICING_TERMS: "Pricing & Terms",
    RejectionCategory.OTHER: "Other",
}
