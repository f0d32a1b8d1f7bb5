"""
Default QC rule set.

Seeded by ``scripts/drug_import_cli.py seed-rules``. Seeding only inserts
rule codes that are not present yet, so rules edited through the shell are
never overwritten.
"""

import logging
from typing import List

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.models.enums import ErrorLevel, RuleCategory, RuleType, TableType
from backend.models.import_task import QcRule
from services.qc_rule_engine import RuleDefinition, validate_rule

logger = logging.getLogger(__name__)


DEFAULT_RULES: List[RuleDefinition] = [
    # Pre-import, every table
    RuleDefinition(
        rule_code='PRE_QC_001',
        rule_name='Report date format',
        rule_type=RuleType.PRE_IMPORT,
        rule_category=RuleCategory.FIELD,
        field_name='report_date',
        rule_expression='not_null(report_date) and not is_date(report_date)',
        error_message='Row {row_number}: report date {value} is not a valid yyyyMMdd date',
        error_level=ErrorLevel.ERROR,
        priority=10,
    ),
    RuleDefinition(
        rule_code='PRE_QC_002',
        rule_name='Hospital code present',
        rule_type=RuleType.PRE_IMPORT,
        rule_category=RuleCategory.FIELD,
        field_name='hospital_code',
        rule_expression='is_blank(hospital_code)',
        error_message='Row {row_number}: hospital code is empty',
        error_level=ErrorLevel.ERROR,
        priority=20,
    ),
    RuleDefinition(
        rule_code='PRE_QC_003',
        rule_name='Drug code null rate',
        rule_type=RuleType.PRE_IMPORT,
        rule_category=RuleCategory.GLOBAL,
        field_name='ypid',
        error_message='{table}: {field_name} null rate {null_rate:.2%} exceeds {max_null_rate:.0%}',
        error_level=ErrorLevel.WARNING,
        threshold=(('max_null_rate', 0.05),),
        priority=30,
    ),

    # Pre-import, per table
    RuleDefinition(
        rule_code='PRE_QC_101',
        rule_name='Conversion factor range',
        rule_type=RuleType.PRE_IMPORT,
        rule_category=RuleCategory.FIELD,
        table_type=TableType.DRUG_CATALOG,
        field_name='conversion_factor',
        rule_expression='not_null(conversion_factor) and conversion_factor > max_conversion_factor',
        error_message='Row {row_number}: conversion factor {value} is above {max_conversion_factor}',
        error_level=ErrorLevel.WARNING,
        threshold=(('max_conversion_factor', 10000),),
        priority=40,
    ),
    RuleDefinition(
        rule_code='PRE_QC_102',
        rule_name='Inbound quantities consistent',
        rule_type=RuleType.PRE_IMPORT,
        rule_category=RuleCategory.LOGIC,
        table_type=TableType.DRUG_INBOUND,
        rule_expression='inbound_pack_qty > inbound_dosage_qty',
        error_message='Row {row_number}: pack quantity exceeds dosage quantity',
        error_level=ErrorLevel.WARNING,
        priority=50,
    ),
    RuleDefinition(
        rule_code='PRE_QC_103',
        rule_name='Usage quantities consistent',
        rule_type=RuleType.PRE_IMPORT,
        rule_category=RuleCategory.LOGIC,
        table_type=TableType.DRUG_USAGE,
        rule_expression='sales_pack_qty > sales_dosage_qty',
        error_message='Row {row_number}: pack quantity exceeds dosage quantity',
        error_level=ErrorLevel.WARNING,
        priority=50,
    ),

    # Post-import, cross-table
    RuleDefinition(
        rule_code='POST_QC_001',
        rule_name='Inbound drug listed in catalog',
        rule_type=RuleType.POST_IMPORT,
        rule_category=RuleCategory.LOGIC,
        table_type=TableType.DRUG_INBOUND,
        field_name='hos_drug_id',
        rule_expression="not exists('DRUG_CATALOG', 'hos_drug_id', hos_drug_id)",
        error_message='Row {row_number}: drug {value} is not in the drug catalog',
        error_level=ErrorLevel.WARNING,
        priority=10,
    ),
    RuleDefinition(
        rule_code='POST_QC_002',
        rule_name='Outbound drug listed in catalog',
        rule_type=RuleType.POST_IMPORT,
        rule_category=RuleCategory.LOGIC,
        table_type=TableType.DRUG_OUTBOUND,
        field_name='hos_drug_id',
        rule_expression="not exists('DRUG_CATALOG', 'hos_drug_id', hos_drug_id)",
        error_message='Row {row_number}: drug {value} is not in the drug catalog',
        error_level=ErrorLevel.WARNING,
        priority=10,
    ),
    RuleDefinition(
        rule_code='POST_QC_003',
        rule_name='Used drug listed in catalog',
        rule_type=RuleType.POST_IMPORT,
        rule_category=RuleCategory.LOGIC,
        table_type=TableType.DRUG_USAGE,
        field_name='hos_drug_id',
        rule_expression="not exists('DRUG_CATALOG', 'hos_drug_id', hos_drug_id)",
        error_message='Row {row_number}: drug {value} is not in the drug catalog',
        error_level=ErrorLevel.WARNING,
        priority=10,
    ),
]


def to_model(rule: RuleDefinition) -> QcRule:
    return QcRule(
        rule_code=rule.rule_code,
        rule_name=rule.rule_name,
        rule_type=int(rule.rule_type),
        rule_category=rule.rule_category.value,
        table_type=int(rule.table_type) if rule.table_type else None,
        field_name=rule.field_name,
        rule_expression=rule.rule_expression,
        error_message=rule.error_message,
        error_level=int(rule.error_level),
        threshold_value=rule.thresholds or None,
        priority=rule.priority,
        enabled=True,
    )


def seed_default_rules(db_session: Session, rules: List[RuleDefinition] = None) -> List[str]:
    """
    Insert the default rules that are missing.

    Args:
        db_session: Database session
        rules: Rule set to seed (defaults to DEFAULT_RULES)

    Returns:
        Codes of the rules that were inserted

    Raises:
        ValueError: A rule in the set does not compile
    """
    rules = DEFAULT_RULES if rules is None else rules
    for rule in rules:
        problems = validate_rule(rule)
        if problems:
            raise ValueError(f"Rule {rule.rule_code} is invalid: {'; '.join(problems)}")

    existing = set(db_session.execute(select(QcRule.rule_code)).scalars())
    inserted = []
    for rule in rules:
        if rule.rule_code in existing:
            logger.debug(f"Rule {rule.rule_code} already present, skipped")
            continue
        db_session.add(to_model(rule))
        inserted.append(rule.rule_code)
    db_session.commit()
    logger.info(f"Seeded {len(inserted)} QC rules ({len(rules) - len(inserted)} already present)")
    return inserted
