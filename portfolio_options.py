from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union


class WithdrawalMethod(Enum):
    NOMINAL = "Nominal"
    INFLATION_ADJUSTED = "InflationAdjusted"
    PERCENT_PORTFOLIO = "PercentPortfolio"
    PERCENT_PORTFOLIO_CLAMPED = "PercentPortfolioClamped"

    @classmethod
    def parse(cls, value: Any) -> "WithdrawalMethod":
        """Accept an enum member, its value, or its name (case-insensitive)."""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for method in cls:
            if text == method.value or text.upper() == method.name:
                return method
        raise ValueError(f"Unknown withdrawal method: {value!r}")


@dataclass(frozen=True)
class NominalWithdrawal:
    """Same nominal dollar amount every year."""
    static_amount: float

    method = WithdrawalMethod.NOMINAL


@dataclass(frozen=True)
class InflationAdjustedWithdrawal:
    """Same real (cycle-start dollars) amount every year."""
    static_amount: float

    method = WithdrawalMethod.INFLATION_ADJUSTED


@dataclass(frozen=True)
class PercentPortfolioWithdrawal:
    """Fixed fraction of the balance at the start of each year."""
    percentage: float

    method = WithdrawalMethod.PERCENT_PORTFOLIO


@dataclass(frozen=True)
class PercentPortfolioClampedWithdrawal:
    """Fraction of the real balance, bounded to a real [floor, ceiling]."""
    percentage: float
    floor: float
    ceiling: float

    method = WithdrawalMethod.PERCENT_PORTFOLIO_CLAMPED

    def __post_init__(self) -> None:
        if self.floor > self.ceiling:
            raise ValueError(
                f"Withdrawal floor ({self.floor:,.0f}) cannot exceed ceiling ({self.ceiling:,.0f})"
            )


Withdrawal = Union[
    NominalWithdrawal,
    InflationAdjustedWithdrawal,
    PercentPortfolioWithdrawal,
    PercentPortfolioClampedWithdrawal,
]

_REQUIRED_FIELDS = {
    WithdrawalMethod.NOMINAL: ("static_amount",),
    WithdrawalMethod.INFLATION_ADJUSTED: ("static_amount",),
    WithdrawalMethod.PERCENT_PORTFOLIO: ("percentage",),
    WithdrawalMethod.PERCENT_PORTFOLIO_CLAMPED: ("percentage", "floor", "ceiling"),
}

_WITHDRAWAL_TYPES = {
    WithdrawalMethod.NOMINAL: NominalWithdrawal,
    WithdrawalMethod.INFLATION_ADJUSTED: InflationAdjustedWithdrawal,
    WithdrawalMethod.PERCENT_PORTFOLIO: PercentPortfolioWithdrawal,
    WithdrawalMethod.PERCENT_PORTFOLIO_CLAMPED: PercentPortfolioClampedWithdrawal,
}


def build_withdrawal(method: Any, fields: Optional[Dict[str, Any]]) -> Withdrawal:
    """
    Build the withdrawal variant for a method from a mapping of optional fields.
    Raises ValueError naming any field the method requires but the mapping lacks.
    """
    method = WithdrawalMethod.parse(method)
    fields = dict(fields or {})
    required = _REQUIRED_FIELDS[method]
    missing = [name for name in required if fields.get(name) is None]
    if missing:
        raise ValueError(f"Missing withdrawal {', '.join(missing)} for {method.value} withdrawals")
    try:
        values = {name: float(fields[name]) for name in required}
    except (TypeError, ValueError):
        raise ValueError(f"Withdrawal {', '.join(required)} must be numeric for {method.value} withdrawals")
    non_finite = [name for name, value in values.items() if not math.isfinite(value)]
    if non_finite:
        raise ValueError(f"Withdrawal {', '.join(non_finite)} must be finite for {method.value} withdrawals")
    return _WITHDRAWAL_TYPES[method](**values)


@dataclass(frozen=True)
class PortfolioOptions:
    simulation_years_length: int
    start_balance: float
    investment_expense_ratio: float
    equities_ratio: float
    withdrawal: Withdrawal
    start_year: Optional[int] = None
    end_year: Optional[int] = None

    def __post_init__(self) -> None:
        # Type coercion
        object.__setattr__(self, "simulation_years_length", int(self.simulation_years_length))
        object.__setattr__(self, "start_balance", float(self.start_balance))
        object.__setattr__(self, "investment_expense_ratio", float(self.investment_expense_ratio))
        object.__setattr__(self, "equities_ratio", float(self.equities_ratio))
        if self.start_year is not None:
            object.__setattr__(self, "start_year", int(self.start_year))
        if self.end_year is not None:
            object.__setattr__(self, "end_year", int(self.end_year))

        # Validation
        if not isinstance(self.withdrawal, tuple(_WITHDRAWAL_TYPES.values())):
            raise ValueError(f"Unsupported withdrawal policy: {self.withdrawal!r}")
        for name in _REQUIRED_FIELDS[self.withdrawal.method]:
            if not math.isfinite(getattr(self.withdrawal, name)):
                raise ValueError(f"Withdrawal {name} must be finite, got {getattr(self.withdrawal, name)}")
        if self.simulation_years_length < 1:
            raise ValueError(
                f"Simulation length must be at least 1 year, got {self.simulation_years_length}"
            )
        if not math.isfinite(self.start_balance):
            raise ValueError(f"Start balance must be finite, got {self.start_balance}")
        if self.start_balance < 0:
            raise ValueError(f"Start balance cannot be negative, got {self.start_balance:,.0f}")
        if not (0.0 <= self.investment_expense_ratio <= 1.0):
            raise ValueError(
                f"Investment expense ratio must be between 0% and 100%, got {self.investment_expense_ratio * 100:.2f}%"
            )
        if not (0.0 <= self.equities_ratio <= 1.0):
            raise ValueError(
                f"Equities ratio must be between 0% and 100%, got {self.equities_ratio * 100:.0f}%"
            )
        if self.start_year is not None and self.end_year is not None and self.end_year < self.start_year:
            raise ValueError(f"End year ({self.end_year}) cannot be before start year ({self.start_year})")

    @property
    def withdrawal_method(self) -> WithdrawalMethod:
        return self.withdrawal.method

    def with_changes(self, **changes: Any) -> "PortfolioOptions":
        """Copy with some fields replaced; runs validation again."""
        data = {
            "simulation_years_length": self.simulation_years_length,
            "start_balance": self.start_balance,
            "investment_expense_ratio": self.investment_expense_ratio,
            "equities_ratio": self.equities_ratio,
            "withdrawal": self.withdrawal,
            "start_year": self.start_year,
            "end_year": self.end_year,
        }
        data.update(changes)
        return PortfolioOptions(**data)

    def to_dict(self) -> Dict[str, Any]:
        withdrawal = {name: float(getattr(self.withdrawal, name))
                      for name in _REQUIRED_FIELDS[self.withdrawal_method]}
        return {
            "simulation_years_length": int(self.simulation_years_length),
            "start_balance": float(self.start_balance),
            "investment_expense_ratio": float(self.investment_expense_ratio),
            "equities_ratio": float(self.equities_ratio),
            "withdrawal_method": self.withdrawal_method.value,
            "withdrawal": withdrawal,
            "start_year": self.start_year,
            "end_year": self.end_year,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PortfolioOptions":
        withdrawal = build_withdrawal(
            data.get("withdrawal_method", WithdrawalMethod.NOMINAL),
            data.get("withdrawal"),
        )
        return cls(
            simulation_years_length=data.get("simulation_years_length", 60),
            start_balance=data.get("start_balance", 1_000_000),
            investment_expense_ratio=data.get("investment_expense_ratio", 0.0025),
            equities_ratio=data.get("equities_ratio", 0.9),
            withdrawal=withdrawal,
            start_year=data.get("start_year"),
            end_year=data.get("end_year"),
        )
