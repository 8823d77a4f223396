from __future__ import annotations

from dataclasses import dataclass, field
from itertools import accumulate
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple
import logging
import math
import re


logger = logging.getLogger(__name__)

# 余额低于该阈值视为已还清（消除浮点残差）
BALANCE_EPSILON = 1e-9

# 追加还款重复频率
FREQUENCY_MONTHLY = "monthly"
FREQUENCY_ANNUALLY = "annually"

_YM_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")


class InvalidParameters(ValueError):
    """贷款参数不合法（在生成任何一期之前抛出）。"""


@dataclass(frozen=True)
class LoanParams:
    """贷款输入参数（一次 build_schedule 调用内不可变）。

    字段说明：
        principal: 贷款本金，必须 > 0。
        annual_rate_pct: 名义年利率（百分比），例如 6 表示 6%。
        term_months: 原始摊还期数（月）。
        start_ym: 起始年月 "YYYY-MM"，只用于给每期打日期标签，不影响计算。
        extras: 期数（从 1 开始）-> 当期追加本金。
        recast_months: 无论是否追加还款都要重新计算月供的期数。
        auto_recast_on_extra: 为 True 时，任何有追加还款（或本金减免）的月份也会触发重算月供。
        forgiveness: 期数 -> 当期本金减免额；减少余额但不计入实际支出。
    """

    principal: float
    annual_rate_pct: float
    term_months: int
    start_ym: Optional[str] = None
    extras: Mapping[int, float] = field(default_factory=dict)
    recast_months: FrozenSet[int] = frozenset()
    auto_recast_on_extra: bool = False
    forgiveness: Mapping[int, float] = field(default_factory=dict)


@dataclass(frozen=True)
class ScheduleRow:
    """单期（月）还款明细。

    字段说明：
        idx: 期数序号（从 1 开始）。
        payment: 本期计划月供（末期会截到刚好还清）。
        interest: 本期利息。
        principal: 本期计划内归还的本金。
        extra: 本期追加还款（本金）。
        total: 本期实际支出 = interest + principal + extra。
        balance: 本期还款后剩余本金。
        date: 本期年月标签 "YYYY-MM"（未提供 start_ym 时为 None）。
        recast: 本期期末是否重算了月供。
        new_payment: 重算后的新月供（下一期起生效）。
        forgiven: 本期本金减免（不计入 total）。
    """

    idx: int
    payment: float
    interest: float
    principal: float
    extra: float
    total: float
    balance: float
    date: Optional[str] = None
    recast: bool = False
    new_payment: Optional[float] = None
    forgiven: float = 0.0


@dataclass(frozen=True)
class PaymentSegment:
    # 从 start 期起执行的月供
    start: int
    payment: float


@dataclass(frozen=True)
class ScheduleResult:
    """还款计划结果。

    字段说明：
        rows: 按时间顺序排列的每期明细。
        total_interest: 全部利息之和。
        total_paid: 全部实际支出之和。
        payoff_month: 余额首次归零的期数；未提前还清时等于 term_months。
        segments: 月供分段（首段从第 1 期开始，每次重算月供新增一段）。
        total_forgiveness: 全部本金减免之和。
    """

    rows: Tuple[ScheduleRow, ...]
    total_interest: float
    total_paid: float
    payoff_month: int
    segments: Tuple[PaymentSegment, ...] = ()
    total_forgiveness: float = 0.0

    def balances(self) -> List[float]:
        # 余额走势（图表用）
        return [row.balance for row in self.rows]

    def cumulative_interest(self) -> List[float]:
        return list(accumulate(row.interest for row in self.rows))

    def cumulative_principal(self) -> List[float]:
        # 计划本金 + 追加还款，不含减免
        return list(accumulate(row.principal + row.extra for row in self.rows))

    def cumulative_forgiveness(self) -> List[float]:
        return list(accumulate(row.forgiven for row in self.rows))


@dataclass(frozen=True)
class ScheduleState:
    """逐月折叠的状态：当前余额、当前月供、剩余期数（含即将处理的这一期）。"""

    balance: float
    payment: float
    remaining_term: int


@dataclass(frozen=True)
class ExtraItem:
    """用户层面的追加还款条目（展开后得到 extras 映射）。

    字段说明：
        month: 首次追加的期数（从 1 开始）。
        amount: 每次追加金额。
        recurring: 是否重复追加。
        recurring_quantity: 重复次数（含首次）。
        recurring_frequency: monthly 每月 / annually 每年。
        forgiveness: 为 True 时表示本金减免而不是追加还款。
    """

    month: float
    amount: float
    recurring: bool = False
    recurring_quantity: int = 1
    recurring_frequency: str = FREQUENCY_MONTHLY
    forgiveness: bool = False


@dataclass(frozen=True)
class BaselineComparison:
    """与基准方案（无追加、无重算）的对比。"""

    result: ScheduleResult
    baseline: ScheduleResult
    interest_saved: float
    months_saved: int


def monthly_rate(annual_rate_pct: float) -> float:
    # 年利率百分比 -> 月利率小数。例如 6% => 0.005
    return annual_rate_pct / 100.0 / 12.0


def annuity_payment(principal: float, rate: float, months: int) -> float:
    if months <= 0:
        return 0.0
    if rate == 0:
        return principal / months
    factor = math.pow(1 + rate, months)
    return principal * rate * factor / (factor - 1)


def add_months(ym: str, months: int) -> str:
    # "YYYY-MM" 往后推 months 个月
    year, month = _parse_ym(ym)
    total = year * 12 + (month - 1) + months
    return f"{total // 12:04d}-{total % 12 + 1:02d}"


def _parse_ym(ym: str) -> Tuple[int, int]:
    match = _YM_PATTERN.match(ym or "")
    if not match:
        raise ValueError(f"invalid year-month: {ym!r}, expected YYYY-MM")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValueError(f"invalid month in year-month: {ym!r}")
    return year, month


def parse_month_input(text: str, max_month: Optional[int] = None) -> List[int]:
    """解析 "12, 24-26 36" 这类期数输入，返回去重后升序的期数列表。

    支持逗号/空白分隔的正整数与闭区间 a-b（b >= a），其他片段直接忽略。
    给定 max_month 时，超出的期数丢弃、区间截断到 max_month。
    """
    if not text or not text.strip():
        return []
    months = set()
    for part in re.split(r"[,\s]+", text.strip()):
        if not part:
            continue
        if re.fullmatch(r"\d+-\d+", part):
            lo, hi = (int(x) for x in part.split("-"))
            if lo > 0 and hi >= lo:
                if max_month is not None:
                    hi = min(hi, max_month)
                months.update(range(lo, hi + 1))
        elif re.fullmatch(r"\d+", part):
            value = int(part)
            if value > 0 and (max_month is None or value <= max_month):
                months.add(value)
    return sorted(months)


def map_extras(items: Iterable[ExtraItem], term_months: int) -> Dict[int, float]:
    # 把追加还款条目展开成 期数 -> 金额；同一期的多笔金额累加。减免条目不在此列。
    return _expand_items((item for item in items if not item.forgiveness), term_months)


def map_forgiveness(items: Iterable[ExtraItem], term_months: int) -> Dict[int, float]:
    return _expand_items((item for item in items if item.forgiveness), term_months)


def _expand_items(items: Iterable[ExtraItem], term_months: int) -> Dict[int, float]:
    extras: Dict[int, float] = {}
    for item in items:
        if not math.isfinite(item.month) or item.month < 1:
            continue
        start = min(term_months, int(round(item.month)))
        amount = max(0.0, item.amount)

        if item.recurring:
            interval = 12 if item.recurring_frequency == FREQUENCY_ANNUALLY else 1
            for i in range(max(item.recurring_quantity, 1)):
                month = start + i * interval
                if month > term_months:
                    break
                extras[month] = extras.get(month, 0.0) + amount
        else:
            extras[start] = extras.get(start, 0.0) + amount
    return extras


def validate_params(params: LoanParams) -> None:
    # 只做校验，不修正输入
    if isinstance(params.term_months, bool) or not isinstance(params.term_months, int):
        raise InvalidParameters("term_months must be an integer")
    if not math.isfinite(params.principal) or params.principal <= 0:
        raise InvalidParameters("principal must be greater than 0")
    if params.term_months <= 0:
        raise InvalidParameters("term_months must be greater than 0")
    if not math.isfinite(params.annual_rate_pct) or params.annual_rate_pct < 0:
        raise InvalidParameters("annual_rate_pct must be >= 0")
    for month, amount in params.extras.items():
        if not math.isfinite(amount) or amount < 0:
            raise InvalidParameters(f"extra payment for month {month} must be >= 0")
    for month, amount in params.forgiveness.items():
        if not math.isfinite(amount) or amount < 0:
            raise InvalidParameters(f"forgiveness for month {month} must be >= 0")
    if params.start_ym is not None:
        try:
            _parse_ym(params.start_ym)
        except ValueError as e:
            raise InvalidParameters(str(e)) from e


def step(
    state: ScheduleState,
    idx: int,
    params: LoanParams,
    rate: float,
) -> Tuple[ScheduleRow, ScheduleState]:
    """处理第 idx 期：返回本期明细与下一期的状态。"""
    balance = state.balance
    payment = state.payment
    interest = balance * rate

    # 计划本金不超过剩余本金；末期按实际应还截断月供，避免多还
    principal_part = max(0.0, payment - interest)
    if principal_part >= balance:
        principal_part = balance
        payment = interest + principal_part

    extra = max(0.0, min(params.extras.get(idx, 0.0), balance - principal_part))

    # 本金减免：减少余额但不计入实际支出
    forgiven = max(0.0, min(params.forgiveness.get(idx, 0.0), balance - principal_part - extra))

    balance = balance - principal_part - extra - forgiven
    if balance < BALANCE_EPSILON:
        balance = 0.0

    remaining = state.remaining_term - 1
    next_payment = state.payment
    new_payment: Optional[float] = None
    triggered = idx in params.recast_months or (params.auto_recast_on_extra and (extra > 0 or forgiven > 0))
    # 最后一期触发的重算没有剩余期数可摊，直接忽略
    if balance > 0 and remaining > 0 and triggered:
        new_payment = annuity_payment(balance, rate, remaining)
        next_payment = new_payment

    row = ScheduleRow(
        idx=idx,
        payment=payment,
        interest=interest,
        principal=principal_part,
        extra=extra,
        total=interest + principal_part + extra,
        balance=balance,
        date=add_months(params.start_ym, idx - 1) if params.start_ym else None,
        recast=new_payment is not None,
        new_payment=new_payment,
        forgiven=forgiven,
    )
    return row, ScheduleState(balance=balance, payment=next_payment, remaining_term=remaining)


def build_schedule(params: LoanParams) -> ScheduleResult:
    # 主流程：
    # 1) 校验输入
    # 2) 按原期数算出初始月供
    # 3) 逐月折叠 step()，余额归零或到达原期数即停止
    validate_params(params)

    rate = monthly_rate(params.annual_rate_pct)
    state = ScheduleState(
        balance=float(params.principal),
        payment=annuity_payment(params.principal, rate, params.term_months),
        remaining_term=params.term_months,
    )

    rows: List[ScheduleRow] = []
    segments: List[PaymentSegment] = [PaymentSegment(1, state.payment)]
    total_interest = 0.0
    total_paid = 0.0
    total_forgiveness = 0.0

    for idx in range(1, params.term_months + 1):
        row, state = step(state, idx, params, rate)
        rows.append(row)
        total_interest += row.interest
        total_paid += row.total
        total_forgiveness += row.forgiven
        if row.recast:
            segments.append(PaymentSegment(idx + 1, state.payment))
        if state.balance == 0:
            break

    # 到期仍有残余本金（浮点漂移）时保留在最后一期余额中，不额外补一期
    if state.balance > 0:
        logger.debug("residual balance %.12f left at maturity (month %d)", state.balance, params.term_months)

    return ScheduleResult(
        rows=tuple(rows),
        total_interest=total_interest,
        total_paid=total_paid,
        payoff_month=rows[-1].idx,
        segments=tuple(segments),
        total_forgiveness=total_forgiveness,
    )


def baseline_params(params: LoanParams) -> LoanParams:
    # 基准方案：同样的贷款，不追加、不重算
    return LoanParams(
        principal=params.principal,
        annual_rate_pct=params.annual_rate_pct,
        term_months=params.term_months,
        start_ym=params.start_ym,
    )


def compare_with_baseline(params: LoanParams) -> BaselineComparison:
    result = build_schedule(params)
    baseline = build_schedule(baseline_params(params))
    return BaselineComparison(
        result=result,
        baseline=baseline,
        interest_saved=baseline.total_interest - result.total_interest,
        months_saved=max(0, baseline.payoff_month - result.payoff_month),
    )


def interest_by_year(rows: Sequence[ScheduleRow]) -> Dict[int, float]:
    # 按“贷款年度”汇总利息（第1年=1~12期，第2年=13~24期 ...）。
    totals: Dict[int, float] = {}
    for row in rows:
        year = (row.idx - 1) // 12 + 1
        totals[year] = totals.get(year, 0.0) + row.interest
    return totals
