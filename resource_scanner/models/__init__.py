# Models package: re-export the public models.
# Prefer importing from the specific submodule (e.g. resource_scanner.models.scan).

from resource_scanner.models.dependencies import (
    ClassifierThresholds as ClassifierThresholds,
    ConfidenceLevel as ConfidenceLevel,
    CreationRecord as CreationRecord,
    DependencyTree as DependencyTree,
    FourthPartyResource as FourthPartyResource,
    RequestEvent as RequestEvent,
    TreeResource as TreeResource,
)
from resource_scanner.models.scan import (
    RESOURCE_TYPES as RESOURCE_TYPES,
    CheckpointSnapshot as CheckpointSnapshot,
    Resource as Resource,
    ResourceType as ResourceType,
    ScanOptions as ScanOptions,
    ScanResult as ScanResult,
    ScanTask as ScanTask,
    SriReport as SriReport,
    WaitUntil as WaitUntil,
)
