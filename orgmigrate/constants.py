"""Constants shared by the ordering, reconciliation and conformance engines."""

from typing import Dict, List

ID_FIELD = "Id"
RECORD_TYPE_OBJECT_NAME = "RecordType"

COMPLEX_FIELDS_SEPARATOR = ";"
COMPLEX_FIELDS_QUERY_PREFIX = "$$"
COMPLEX_FIELDS_QUERY_SEPARATOR = "$"
REFERENCE_FIELD_SEPARATOR = "."

CSV_FILE_SUFFIX = ".csv"
CSV_SOURCE_FILE_SUFFIX = "_source"
CSV_TARGET_FILE_SUFFIX = "_target"
CSV_ISSUES_ERRORS_FILENAME = "CSVIssuesReport.csv"
MISSING_PARENT_LOOKUP_RECORDS_ERRORS_FILENAME = "MissingParentRecordsReport.csv"
ERRORS_FIELD_NAME = "Errors"

CSV_ISSUE_REPORT_COLUMNS: List[str] = [
    "Date update",
    "sObject name",
    "Field name",
    "Field value",
    "Parent SObject name",
    "Parent field name",
    "Parent field value",
    "Error",
]

MISSING_PARENT_REPORT_COLUMNS: List[str] = [
    "Date update",
    "Record Id",
    "Lookup field name",
    "Lookup reference field name",
    "sObject name",
    "Parent SObject name",
    "Parent ExternalId field name",
    "Missing parent External Id value",
]

# Pairwise precedence overrides: key must come before every listed object.
SPECIAL_OBJECT_QUERY_ORDER: Dict[str, List[str]] = {
    "AccountContactRelation": ["Account", "Contact", "Case"],
}
SPECIAL_OBJECT_DELETE_ORDER: Dict[str, List[str]] = {
    "ProductAttribute": ["ProductAttributeSetProduct"],
}
SPECIAL_OBJECT_UPDATE_ORDER: Dict[str, List[str]] = {
    "ProductAttributeSetProduct": ["ProductAttribute"],
}
# Plain lookups treated as ownership edges: parent -> children.
SPECIAL_OBJECT_LOOKUP_MASTER_DETAIL_ORDER: Dict[str, List[str]] = {
    "Contact": ["Case"],
    "Account": ["Case"],
}

SPECIAL_OBJECTS: List[str] = ["Group", "User", "RecordType"]

# Objects the engine reads but never writes.
RESTRICTED_OBJECTS: List[str] = [
    "Profile",
    "User",
    "Group",
    "DandBCompany",
    "ContentVersion",
    "ContentDocument",
    "ContentDocumentLink",
    "Attachment",
    "Note",
]

OBJECTS_NOT_TO_USE_IN_FILTERED_QUERY: List[str] = ["RecordType", "User", "Group", "DandBCompany"]

DEFAULT_EXTERNAL_IDS: Dict[str, str] = {
    "RecordType": "DeveloperName;NamespacePrefix;SobjectType",
}

MAX_ORDERING_ITERATIONS = 10
MAX_IN_CLAUSE_VALUES = 200
SYNTHETIC_ID_DIGITS = 16
SYNTHETIC_ID_PREFIX = "ID"
