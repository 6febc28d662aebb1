# Named regression fixtures replayed before a rule may become validated.

from sqlalchemy import Column, String, DateTime, Text, Numeric, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
from taxcore.database import Base, JSONType


class RuleTestCase(Base):
    __tablename__ = "rule_test_cases"
    __table_args__ = (
        UniqueConstraint("rule_id", "test_name", name="unique_rule_test_name"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    rule_id = Column(String, ForeignKey("tax_rules.id", ondelete="CASCADE"), nullable=False, index=True)
    test_name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    input_data = Column(JSONType, nullable=False)
    expected_output = Column(JSONType, nullable=False)
    # {"final_amount": 45000, "variables": {"taxable_income": 1000000}}
    tolerance = Column(Numeric(15, 2), default=0.01)

    created_at = Column(DateTime, default=datetime.now)

    rule = relationship("TaxRule", back_populates="test_cases")

    def __repr__(self):
        return f"<RuleTestCase(rule={self.rule_id[:8]}, name={self.test_name})>"
