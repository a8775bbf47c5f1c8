"""
Target field dictionary for customer imports.

Every field the mapping, validation and commit stages recognize is declared
here with its value type, its requirements and the header synonyms (Norwegian
and English) used by the mapping suggester.
"""
from dataclasses import dataclass
from typing import Dict, Optional, Tuple


FIELD_TYPE_STRING = "string"
FIELD_TYPE_DATE = "date"
FIELD_TYPE_PHONE = "phone"
FIELD_TYPE_EMAIL = "email"
FIELD_TYPE_POSTAL_CODE = "postal_code"
FIELD_TYPE_INTEGER = "integer"
FIELD_TYPE_NUMBER = "number"


@dataclass(frozen=True)
class FieldDefinition:
    name: str
    label: str
    field_type: str = FIELD_TYPE_STRING
    required: bool = False
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    synonyms: Tuple[str, ...] = ()


FIELD_DEFINITIONS: Tuple[FieldDefinition, ...] = (
    FieldDefinition(
        "name", "Name", required=True, min_length=2, max_length=255,
        synonyms=("navn", "kundenavn", "firmanavn", "firma", "bedrift", "selskap",
                  "virksomhet", "organisasjon", "customer", "customer name", "client",
                  "company"),
    ),
    FieldDefinition(
        "address", "Address", required=True, min_length=3, max_length=255,
        synonyms=("adresse", "gateadresse", "besoksadresse", "veiadresse", "street",
                  "street address", "address line 1"),
    ),
    FieldDefinition(
        "postal_code", "Postal code", FIELD_TYPE_POSTAL_CODE,
        synonyms=("postnummer", "postnr", "pnr", "postkode", "zip", "zip code",
                  "zipcode", "postcode"),
    ),
    FieldDefinition(
        "city", "City", max_length=100,
        synonyms=("poststed", "sted", "by", "kommune", "town"),
    ),
    FieldDefinition(
        "phone", "Phone", FIELD_TYPE_PHONE,
        synonyms=("telefon", "telefonnummer", "tlf", "mobil", "mobilnummer", "fon",
                  "phone number", "mobile", "cell"),
    ),
    FieldDefinition(
        "email", "E-mail", FIELD_TYPE_EMAIL, max_length=255,
        synonyms=("epost", "e post", "epostadresse", "e mail", "mail", "email address"),
    ),
    FieldDefinition(
        "contact_person", "Contact person", max_length=255,
        synonyms=("kontaktperson", "kontakt", "ansvarlig", "daglig leder", "contact",
                  "contact name"),
    ),
    FieldDefinition(
        "category", "Category", max_length=100,
        synonyms=("kategori", "type", "kundetype", "bransje", "class", "segment"),
    ),
    FieldDefinition(
        "notes", "Notes",
        synonyms=("notater", "notat", "merknad", "merknader", "kommentar",
                  "kommentarer", "beskrivelse", "info", "comments", "remarks"),
    ),
    FieldDefinition(
        "external_id", "External id", max_length=100,
        synonyms=("ekstern id", "kundenummer", "kundenr", "kunde id", "id",
                  "customer id", "customer number", "reference"),
    ),
    FieldDefinition(
        "org_number", "Organization number", max_length=20,
        synonyms=("org nummer", "organisasjonsnummer", "orgnr", "org nr",
                  "organization number", "company number"),
    ),
    FieldDefinition(
        "last_service_date", "Last service date", FIELD_TYPE_DATE,
        synonyms=("siste kontroll", "sist kontrollert", "siste service", "utfort",
                  "last service", "last inspection", "last visit"),
    ),
    FieldDefinition(
        "next_service_date", "Next service date", FIELD_TYPE_DATE,
        synonyms=("neste kontroll", "neste service", "planlagt", "next service",
                  "next inspection", "due date"),
    ),
    FieldDefinition(
        "service_interval_months", "Service interval (months)", FIELD_TYPE_INTEGER,
        synonyms=("kontrollintervall", "kontroll intervall mnd", "intervall",
                  "intervall mnd", "service interval", "interval months"),
    ),
    FieldDefinition(
        "latitude", "Latitude", FIELD_TYPE_NUMBER,
        synonyms=("lat", "breddegrad"),
    ),
    FieldDefinition(
        "longitude", "Longitude", FIELD_TYPE_NUMBER,
        synonyms=("lng", "lon", "long", "lengdegrad"),
    ),
)

FIELDS: Dict[str, FieldDefinition] = {definition.name: definition for definition in FIELD_DEFINITIONS}

REQUIRED_FIELDS = tuple(name for name, definition in FIELDS.items() if definition.required)


def is_known_field(name: str) -> bool:
    return name in FIELDS
