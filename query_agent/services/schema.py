import json
from typing import Dict, List, Tuple

TENANT_COLUMN = "tenant_id"

# Tables the assistant may read, in prompt order
ALLOWED_TABLES: Tuple[str, ...] = ("projects", "companies", "addresses")

_COMMON_COLUMNS = (TENANT_COLUMN, "id", "created_at", "updated_at", "name", "type", "metadata")

ALLOWED_COLUMNS: Dict[str, frozenset] = {
    "projects": frozenset(_COMMON_COLUMNS + (
        "permit_number", "description", "project_type", "status", "value",
        "square_footage", "contractor_id", "contractor_name", "owner_name",
        "address_id", "address_full", "city", "state", "zip_code",
        "submitted_date", "issued_date", "completed_date", "expiration_date",
        "inspection_count", "last_inspection_date", "fees_total", "fees_paid",
        "company_name", "start_date", "end_date", "budget", "spent", "progress",
        "milestone_count",
    )),
    "companies": frozenset(_COMMON_COLUMNS + (
        "industry", "size", "revenue", "employee_count", "website", "location",
        "status", "project_count", "total_project_value", "last_project_date",
        "contact_email", "contact_phone", "notes", "active_permits",
        "primary_contractor", "license_number", "insurance_status",
        "bonding_capacity", "safety_rating",
    )),
    "addresses": frozenset(_COMMON_COLUMNS + (
        "attom_id", "record_last_updated", "address_type_description",
        "apn_formatted", "built_year_at", "city", "contractor_names",
        "county_name", "full_address", "full_address_has_numbers",
        "homeowner_names", "job_count", "latest_permit_date",
        "latest_permit_type", "property_latitude", "property_longitude",
        "property_legal_description", "property_type_major_category",
        "property_type_sub_category", "state", "total_job_value", "zip",
        "street", "zip_code", "country", "county", "latitude", "longitude",
        "address_type", "property_value", "lot_size", "building_area",
        "year_built", "zoning", "project_count", "last_permit_date",
    )),
}


def is_allowed_table(table: str) -> bool:
    return table.lower() in ALLOWED_COLUMNS


class SchemaService:
    """
    Static catalog of what the assistant can query.
    The tenant column is hidden everywhere the model can see it, tenant
    scoping is stated as a rule in the system prompt instead.
    """

    @staticmethod
    def get_schema_json() -> Dict[str, List[str]]:
        return {
            table: sorted(c for c in ALLOWED_COLUMNS[table] if c != TENANT_COLUMN)
            for table in ALLOWED_TABLES
        }

    @staticmethod
    def get_schema_summary() -> str:
        """One line per table, e.g. `- projects(budget, city, ...)`."""
        return "\n".join(
            f"- {table}({', '.join(columns)})"
            for table, columns in SchemaService.get_schema_json().items()
        )

    @staticmethod
    def describe_schema() -> str:
        """Tool output for `describe_schema`."""
        return json.dumps(SchemaService.get_schema_json(), indent=2)
