"""Pydantic models for the declarative migration file (export.json)."""

import json
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .script import MigrationObject, MigrationScript, MockField, Operation, parse_query


class MockFieldModel(BaseModel):
    name: str
    pattern: str


class ScriptObjectModel(BaseModel):
    query: str
    operation: str = "Readonly"
    externalId: str = ""
    deleteOldData: bool = False
    deleteQuery: str = ""
    hardDelete: bool = False
    skipRecordsComparison: bool = False
    skipExistingRecords: bool = False
    processAllSource: bool = False
    processAllTarget: bool = False
    master: bool = True
    excluded: bool = False
    useSourceCSVFile: bool = False
    targetObject: str = ""
    fieldMapping: Dict[str, str] = Field(default_factory=dict)
    mockFields: List[MockFieldModel] = Field(default_factory=list)
    excludedFromUpdateFields: List[str] = Field(default_factory=list)

    @field_validator("operation")
    @classmethod
    def _known_operation(cls, value: str) -> str:
        return Operation.parse(value).value


class ScriptModel(BaseModel):
    objects: List[ScriptObjectModel]
    keepObjectOrder: bool = False
    excludeIdsFromCSVFiles: bool = False
    validateCSVFilesOnly: bool = False
    importCSVFilesAsIs: bool = False
    createTargetCSVFiles: bool = True
    promptOnIssuesInCSVFiles: bool = True
    promptOnMissingParentObjects: bool = True
    csvReadDelimiter: str = ","
    csvWriteDelimiter: str = ","
    csvFileEncoding: str = "utf-8"
    csvInsertNulls: bool = True
    concurrentDescribe: bool = True
    allOrNone: bool = False
    excludedObjects: List[str] = Field(default_factory=list)

    def to_script(self) -> MigrationScript:
        """Build the runtime script; queries are parsed here."""
        objects = []
        for index, item in enumerate(self.objects):
            parsed = parse_query(item.query)
            obj = MigrationObject(
                name=parsed.object_name,
                query=item.query,
                operation=Operation.parse(item.operation),
                external_id=item.externalId.strip(),
                delete_old_data=item.deleteOldData,
                delete_query=item.deleteQuery,
                hard_delete=item.hardDelete,
                skip_records_comparison=item.skipRecordsComparison,
                skip_existing_records=item.skipExistingRecords,
                process_all_source=item.processAllSource,
                process_all_target=item.processAllTarget,
                master=item.master,
                excluded=item.excluded,
                use_source_csv_file=item.useSourceCSVFile,
                target_object=item.targetObject,
                field_mapping=dict(item.fieldMapping),
                mock_fields=[MockField(name=m.name, pattern=m.pattern) for m in item.mockFields],
                excluded_from_update_fields=list(item.excludedFromUpdateFields),
                declaration_index=index,
            )
            obj.parsed_query = parsed
            objects.append(obj)

        return MigrationScript(
            objects=objects,
            keep_object_order=self.keepObjectOrder,
            exclude_ids_from_csv_files=self.excludeIdsFromCSVFiles,
            validate_csv_files_only=self.validateCSVFilesOnly,
            import_csv_files_as_is=self.importCSVFilesAsIs,
            create_target_csv_files=self.createTargetCSVFiles,
            prompt_on_issues_in_csv_files=self.promptOnIssuesInCSVFiles,
            prompt_on_missing_parent_objects=self.promptOnMissingParentObjects,
            csv_read_delimiter=self.csvReadDelimiter,
            csv_write_delimiter=self.csvWriteDelimiter,
            csv_file_encoding=self.csvFileEncoding,
            csv_insert_nulls=self.csvInsertNulls,
            concurrent_describe=self.concurrentDescribe,
            all_or_none=self.allOrNone,
            excluded_objects=list(self.excludedObjects),
        )


def load_script(path: str, overrides: Optional[Dict[str, object]] = None) -> MigrationScript:
    """
    Load and validate a migration file.

    Args:
        path: Path to export.json
        overrides: Top-level keys replacing values from the file

    Returns:
        MigrationScript with parsed object queries
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if overrides:
        data.update(overrides)
    return ScriptModel.model_validate(data).to_script()
