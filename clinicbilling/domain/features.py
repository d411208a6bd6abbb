from __future__ import annotations

from enum import Enum
from typing import Mapping

from clinicbilling.core.errors import ConfigError, UnknownFeatureError
from clinicbilling.domain.tiers import LADDER, Tier, compare


class Feature(str, Enum):
    # CAPTURE
    PAPER_SCANNING = "PAPER_SCANNING"
    EXCEL_IMPORT = "EXCEL_IMPORT"
    PATIENT_DEDUPLICATION = "PATIENT_DEDUPLICATION"
    BASIC_PATIENT_MANAGEMENT = "BASIC_PATIENT_MANAGEMENT"
    DOCUMENT_ARCHIVAL = "DOCUMENT_ARCHIVAL"
    EXPORT_CSV = "EXPORT_CSV"
    OCR_BASIC = "OCR_BASIC"
    # CORE
    CALENDAR_SLOTS = "CALENDAR_SLOTS"
    VISIT_HISTORY = "VISIT_HISTORY"
    MEDICINES_LIST = "MEDICINES_LIST"
    INVOICING = "INVOICING"
    DIGITAL_PRESCRIPTIONS = "DIGITAL_PRESCRIPTIONS"
    ONE_WAY_WHATSAPP = "ONE_WAY_WHATSAPP"
    BASIC_ANALYTICS = "BASIC_ANALYTICS"
    MEDICAL_CODING = "MEDICAL_CODING"
    # PLUS
    WHATSAPP_API = "WHATSAPP_API"
    AUTO_REMINDERS = "AUTO_REMINDERS"
    PAYMENT_LINKS = "PAYMENT_LINKS"
    TWO_WAY_WHATSAPP = "TWO_WAY_WHATSAPP"
    PRESCRIPTION_TEMPLATES = "PRESCRIPTION_TEMPLATES"
    MULTI_DEVICE = "MULTI_DEVICE"
    ROLE_MANAGEMENT = "ROLE_MANAGEMENT"
    CONSENT_MANAGEMENT = "CONSENT_MANAGEMENT"
    DOCTOR_SIGNATURE = "DOCTOR_SIGNATURE"
    # PRO
    MULTI_DOCTOR = "MULTI_DOCTOR"
    MULTI_CLINIC = "MULTI_CLINIC"
    LAB_TESTS = "LAB_TESTS"
    INVENTORY = "INVENTORY"
    QUEUE_MANAGEMENT = "QUEUE_MANAGEMENT"
    AUDIT_LOGS = "AUDIT_LOGS"
    INSURANCE_BILLING = "INSURANCE_BILLING"
    DIGITAL_INTAKE_FORMS = "DIGITAL_INTAKE_FORMS"
    BROADCAST_CAMPAIGNS = "BROADCAST_CAMPAIGNS"
    OCR_ADVANCED = "OCR_ADVANCED"
    ADVANCED_ANALYTICS = "ADVANCED_ANALYTICS"
    # ENTERPRISE
    FULL_EHR = "FULL_EHR"
    API_ACCESS = "API_ACCESS"
    MULTI_LOCATION_ANALYTICS = "MULTI_LOCATION_ANALYTICS"
    CUSTOM_BRANDING = "CUSTOM_BRANDING"
    DATA_WAREHOUSE_EXPORT = "DATA_WAREHOUSE_EXPORT"
    SSO = "SSO"
    WHATSAPP_CHATBOTS = "WHATSAPP_CHATBOTS"
    BULK_IMPORT_SUITE = "BULK_IMPORT_SUITE"
    # INTELLIGENCE add-on
    AI_PRESCRIPTION_ASSISTANT = "AI_PRESCRIPTION_ASSISTANT"
    AI_DIAGNOSIS_HINTS = "AI_DIAGNOSIS_HINTS"
    SMART_TASK_ENGINE = "SMART_TASK_ENGINE"
    PREDICTIVE_NO_SHOW = "PREDICTIVE_NO_SHOW"
    PATIENT_SEGMENTATION = "PATIENT_SEGMENTATION"
    ANOMALY_DETECTION = "ANOMALY_DETECTION"


_F = Feature

FEATURE_TIER_MAP: dict[Feature, Tier] = {
    _F.PAPER_SCANNING: Tier.CAPTURE,
    _F.EXCEL_IMPORT: Tier.CAPTURE,
    _F.PATIENT_DEDUPLICATION: Tier.CAPTURE,
    _F.BASIC_PATIENT_MANAGEMENT: Tier.CAPTURE,
    _F.DOCUMENT_ARCHIVAL: Tier.CAPTURE,
    _F.EXPORT_CSV: Tier.CAPTURE,
    _F.OCR_BASIC: Tier.CAPTURE,
    _F.CALENDAR_SLOTS: Tier.CORE,
    _F.VISIT_HISTORY: Tier.CORE,
    _F.MEDICINES_LIST: Tier.CORE,
    _F.INVOICING: Tier.CORE,
    _F.DIGITAL_PRESCRIPTIONS: Tier.CORE,
    _F.ONE_WAY_WHATSAPP: Tier.CORE,
    _F.BASIC_ANALYTICS: Tier.CORE,
    _F.MEDICAL_CODING: Tier.CORE,
    _F.WHATSAPP_API: Tier.PLUS,
    _F.AUTO_REMINDERS: Tier.PLUS,
    _F.PAYMENT_LINKS: Tier.PLUS,
    _F.TWO_WAY_WHATSAPP: Tier.PLUS,
    _F.PRESCRIPTION_TEMPLATES: Tier.PLUS,
    _F.MULTI_DEVICE: Tier.PLUS,
    _F.ROLE_MANAGEMENT: Tier.PLUS,
    _F.CONSENT_MANAGEMENT: Tier.PLUS,
    _F.DOCTOR_SIGNATURE: Tier.PLUS,
    _F.MULTI_DOCTOR: Tier.PRO,
    _F.MULTI_CLINIC: Tier.PRO,
    _F.LAB_TESTS: Tier.PRO,
    _F.INVENTORY: Tier.PRO,
    _F.QUEUE_MANAGEMENT: Tier.PRO,
    _F.AUDIT_LOGS: Tier.PRO,
    _F.INSURANCE_BILLING: Tier.PRO,
    _F.DIGITAL_INTAKE_FORMS: Tier.PRO,
    _F.BROADCAST_CAMPAIGNS: Tier.PRO,
    _F.OCR_ADVANCED: Tier.PRO,
    _F.ADVANCED_ANALYTICS: Tier.PRO,
    _F.FULL_EHR: Tier.ENTERPRISE,
    _F.API_ACCESS: Tier.ENTERPRISE,
    _F.MULTI_LOCATION_ANALYTICS: Tier.ENTERPRISE,
    _F.CUSTOM_BRANDING: Tier.ENTERPRISE,
    _F.DATA_WAREHOUSE_EXPORT: Tier.ENTERPRISE,
    _F.SSO: Tier.ENTERPRISE,
    _F.WHATSAPP_CHATBOTS: Tier.ENTERPRISE,
    _F.BULK_IMPORT_SUITE: Tier.ENTERPRISE,
    _F.AI_PRESCRIPTION_ASSISTANT: Tier.INTELLIGENCE,
    _F.AI_DIAGNOSIS_HINTS: Tier.INTELLIGENCE,
    _F.SMART_TASK_ENGINE: Tier.INTELLIGENCE,
    _F.PREDICTIVE_NO_SHOW: Tier.INTELLIGENCE,
    _F.PATIENT_SEGMENTATION: Tier.INTELLIGENCE,
    _F.ANOMALY_DETECTION: Tier.INTELLIGENCE,
}

FEATURE_DISPLAY_NAMES: dict[Feature, str] = {
    _F.PAPER_SCANNING: "Paper Scanning",
    _F.EXCEL_IMPORT: "Excel Import",
    _F.PATIENT_DEDUPLICATION: "Patient Deduplication",
    _F.BASIC_PATIENT_MANAGEMENT: "Patient Management",
    _F.DOCUMENT_ARCHIVAL: "Document Archival",
    _F.EXPORT_CSV: "CSV Export",
    _F.OCR_BASIC: "Basic OCR",
    _F.CALENDAR_SLOTS: "Calendar Slots",
    _F.VISIT_HISTORY: "Visit History",
    _F.MEDICINES_LIST: "Medicines List",
    _F.INVOICING: "Invoicing",
    _F.DIGITAL_PRESCRIPTIONS: "Digital Prescriptions",
    _F.ONE_WAY_WHATSAPP: "WhatsApp Notifications",
    _F.BASIC_ANALYTICS: "Basic Analytics",
    _F.MEDICAL_CODING: "Medical Coding",
    _F.WHATSAPP_API: "WhatsApp API",
    _F.AUTO_REMINDERS: "Automated Reminders",
    _F.PAYMENT_LINKS: "Payment Links",
    _F.TWO_WAY_WHATSAPP: "Two-way WhatsApp",
    _F.PRESCRIPTION_TEMPLATES: "Prescription Templates",
    _F.MULTI_DEVICE: "Multi-device Access",
    _F.ROLE_MANAGEMENT: "Role Management",
    _F.CONSENT_MANAGEMENT: "Consent Management",
    _F.DOCTOR_SIGNATURE: "Doctor Signature",
    _F.MULTI_DOCTOR: "Multiple Doctors",
    _F.MULTI_CLINIC: "Multiple Clinics",
    _F.LAB_TESTS: "Lab Tests",
    _F.INVENTORY: "Inventory",
    _F.QUEUE_MANAGEMENT: "Queue Management",
    _F.AUDIT_LOGS: "Audit Logs",
    _F.INSURANCE_BILLING: "Insurance Billing",
    _F.DIGITAL_INTAKE_FORMS: "Digital Intake Forms",
    _F.BROADCAST_CAMPAIGNS: "Broadcast Campaigns",
    _F.OCR_ADVANCED: "Advanced OCR",
    _F.ADVANCED_ANALYTICS: "Advanced Analytics",
    _F.FULL_EHR: "Full EHR",
    _F.API_ACCESS: "API Access",
    _F.MULTI_LOCATION_ANALYTICS: "Multi-location Analytics",
    _F.CUSTOM_BRANDING: "Custom Branding",
    _F.DATA_WAREHOUSE_EXPORT: "Data Warehouse Export",
    _F.SSO: "Single Sign-On",
    _F.WHATSAPP_CHATBOTS: "WhatsApp Chatbots",
    _F.BULK_IMPORT_SUITE: "Bulk Import Suite",
    _F.AI_PRESCRIPTION_ASSISTANT: "AI Prescription Assistant",
    _F.AI_DIAGNOSIS_HINTS: "AI Diagnosis Hints",
    _F.SMART_TASK_ENGINE: "Smart Task Engine",
    _F.PREDICTIVE_NO_SHOW: "No-show Prediction",
    _F.PATIENT_SEGMENTATION: "Patient Segmentation",
    _F.ANOMALY_DETECTION: "Anomaly Detection",
}


def validate_feature_map(
    feature_map: Mapping[Feature, Tier] | None = None,
    display_names: Mapping[Feature, str] | None = None,
) -> None:
    """Fail loudly when any feature lacks a tier mapping or display name.

    Runs at import time and again on application startup so a feature added
    to the enumeration without a mapping never reaches a request.
    """
    feature_map = FEATURE_TIER_MAP if feature_map is None else feature_map
    display_names = FEATURE_DISPLAY_NAMES if display_names is None else display_names
    unmapped = [feature.value for feature in Feature if feature not in feature_map]
    if unmapped:
        raise ConfigError(f"Features without a tier mapping: {', '.join(unmapped)}", features=unmapped)
    invalid = [
        feature.value
        for feature, tier in feature_map.items()
        if not isinstance(tier, Tier)
    ]
    if invalid:
        raise ConfigError(f"Features mapped to unknown tiers: {', '.join(invalid)}", features=invalid)
    unnamed = [feature.value for feature in Feature if not display_names.get(feature)]
    if unnamed:
        raise ConfigError(f"Features without a display name: {', '.join(unnamed)}", features=unnamed)


def parse_feature(value: str | Feature) -> Feature:
    if isinstance(value, Feature):
        return value
    try:
        return Feature(str(value).strip().upper())
    except ValueError as exc:
        raise UnknownFeatureError(f"Unknown feature: {value}", feature=str(value)) from exc


def required_tier(feature: str | Feature) -> Tier:
    return FEATURE_TIER_MAP[parse_feature(feature)]


def display_name(feature: str | Feature) -> str:
    return FEATURE_DISPLAY_NAMES[parse_feature(feature)]


def features_for_tier(tier: Tier) -> frozenset[Feature]:
    # Features whose minimum tier is exactly this tier; drives upgrade comparison UI.
    return frozenset(feature for feature, required in FEATURE_TIER_MAP.items() if required == tier)


def features_up_to_tier(tier: Tier) -> frozenset[Feature]:
    # Cumulative ladder view; the add-on's features are never included.
    return frozenset(
        feature
        for feature, required in FEATURE_TIER_MAP.items()
        if required in LADDER and compare(tier, required) >= 0
    )


validate_feature_map()
