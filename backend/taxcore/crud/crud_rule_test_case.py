"""
Rule Test Case CRUD Operations
"""

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from typing import List, Optional

from taxcore.models.rule_test_case import RuleTestCase
from taxcore.schema.rule import RuleTestCaseCreate
from taxcore.exceptions.rule_exceptions import FixtureAlreadyExistsException


def create_test_case(db: Session, rule_id: str, data: RuleTestCaseCreate) -> RuleTestCase:
    test_case = RuleTestCase(
        rule_id=rule_id,
        test_name=data.test_name,
        description=data.description,
        input_data=data.input_data,
        expected_output=data.expected_output,
        tolerance=data.tolerance
    )

    db.add(test_case)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise FixtureAlreadyExistsException()
    db.refresh(test_case)

    return test_case


def get_test_cases(db: Session, rule_id: str) -> List[RuleTestCase]:
    return db.query(RuleTestCase).filter(RuleTestCase.rule_id == rule_id).order_by(RuleTestCase.test_name).all()


def get_test_case(db: Session, test_case_id: str) -> Optional[RuleTestCase]:
    return db.query(RuleTestCase).filter(RuleTestCase.id == test_case_id).first()


def delete_test_case(db: Session, test_case: RuleTestCase) -> bool:
    db.delete(test_case)
    db.commit()

    return True
