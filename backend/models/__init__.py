"""Models package for the drug import system."""
from backend.models.schema import (
    Base, HospitalInfo, DrugCatalog, DrugInbound, DrugOutbound, DrugUsage, TABLE_MODELS, model_for
)
from backend.models.import_task import ImportTask, ImportTaskDetail, QcRule, QcFinding

__all__ = [
    'Base', 'HospitalInfo', 'DrugCatalog', 'DrugInbound', 'DrugOutbound', 'DrugUsage',
    'TABLE_MODELS', 'model_for', 'ImportTask', 'ImportTaskDetail', 'QcRule', 'QcFinding',
]
