import csv
import logging
import os
import re
from io import BytesIO, StringIO
from typing import List, Optional, Sequence
import zipfile
from urllib.parse import quote

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from fastapi import FastAPI, HTTPException, Request, Depends
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, field_validator
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from mortgage_recast.calculator import (
    FREQUENCY_ANNUALLY,
    FREQUENCY_MONTHLY,
    BaselineComparison,
    ExtraItem,
    LoanParams,
    ScheduleRow,
    compare_with_baseline,
    map_extras,
    map_forgiveness,
    parse_month_input,
)
from mortgage_recast.report import generate_pdf


logger = logging.getLogger(__name__)

API_KEY = os.getenv("API_KEY")

DEFAULT_RATE_LIMIT = os.getenv("RATE_LIMIT_DEFAULT", "60/minute")
EXPORT_RATE_LIMIT = os.getenv("RATE_LIMIT_EXPORT", "15/minute")
MAX_TERM_MONTHS = int(os.getenv("MAX_TERM_MONTHS", "600"))
MAX_PRINCIPAL = float(os.getenv("MAX_PRINCIPAL", "30000000"))
MAX_ANNUAL_RATE = float(os.getenv("MAX_ANNUAL_RATE", "30"))
MAX_SCHEDULE_ROWS = int(os.getenv("MAX_SCHEDULE_ROWS", "2000"))
MAX_EXPORT_BYTES = int(os.getenv("MAX_EXPORT_BYTES", str(6 * 1024 * 1024)))
ALLOWED_FREQUENCIES = {FREQUENCY_MONTHLY, FREQUENCY_ANNUALLY}

CSV_HEADER = [
    "Month",
    "Date",
    "Scheduled Payment",
    "Interest",
    "Principal",
    "Extra",
    "Forgiven",
    "Total Paid",
    "Ending Balance",
    "Recast?",
    "New Payment",
]


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",")[0].strip()
        if candidate:
            return candidate
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return get_remote_address(request)


limiter = Limiter(key_func=_client_ip, default_limits=[DEFAULT_RATE_LIMIT])

app = FastAPI(
    title="Mortgage Recast",
    description="固定利率房贷还款计划：支持任意月份追加本金与重算月供（recast）。",
    version="0.1.0",
)
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)


def require_api_key(request: Request):
    if not API_KEY:
        return
    provided = request.headers.get("x-api-key")
    if not provided or provided != API_KEY:
        raise HTTPException(status_code=401, detail="invalid or missing api key")


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(status_code=429, content={"detail": "Rate limit exceeded"})


class ExtraPaymentItem(BaseModel):
    # 单笔 / 重复追加还款
    month: int = Field(..., ge=1, le=MAX_TERM_MONTHS, description="首次追加的期数（从 1 开始）")
    amount: float = Field(..., ge=0, le=MAX_PRINCIPAL, description="每次追加金额")
    recurring: bool = Field(False, description="是否重复追加")
    recurring_quantity: int = Field(1, ge=1, le=MAX_TERM_MONTHS, description="重复次数（含首次）")
    recurring_frequency: str = Field(FREQUENCY_MONTHLY, description="重复频率：monthly / annually")
    forgiveness: bool = Field(False, description="为 true 时按本金减免处理（减少余额，不计入实际支出）")

    @field_validator("recurring_frequency")
    @classmethod
    def _validate_frequency(cls, value: str) -> str:
        normalized = (value or "").strip().lower()
        if normalized not in ALLOWED_FREQUENCIES:
            raise ValueError(f"recurring_frequency must be one of {sorted(ALLOWED_FREQUENCIES)}")
        return normalized


class ScheduleRequest(BaseModel):
    # 基础贷款信息
    principal: float = Field(..., gt=0, le=MAX_PRINCIPAL, description="贷款本金")
    annual_rate_pct: float = Field(..., ge=0, le=MAX_ANNUAL_RATE, description="年利率百分比，例如 6")
    term_months: int = Field(..., gt=0, le=MAX_TERM_MONTHS, description="贷款总期数（月），例如 360")
    start_ym: Optional[str] = Field(None, pattern=r"^\d{4}-\d{2}$", description="首期年月 YYYY-MM，仅用于标注日期")

    # 追加还款与重算月供
    extras: List[ExtraPaymentItem] = Field(default_factory=list, description="追加还款条目")
    recast_months: List[int] = Field(
        default_factory=list, max_length=MAX_TERM_MONTHS, description="强制重算月供的期数"
    )
    recast_months_text: Optional[str] = Field(None, max_length=2000, description="重算期数文本，例如 \"12, 24-26\"")
    auto_recast_on_extra: bool = Field(False, description="有追加还款（或本金减免）的月份自动重算月供")

    @field_validator("recast_months")
    @classmethod
    def _validate_recast_months(cls, value: List[int]) -> List[int]:
        if any(m < 1 or m > MAX_TERM_MONTHS for m in value):
            raise ValueError(f"recast_months must be between 1 and {MAX_TERM_MONTHS}")
        return value

    @field_validator("recast_months_text")
    @classmethod
    def _validate_recast_months_text(cls, value: Optional[str]) -> Optional[str]:
        # 区间上限同样受期数上限约束，避免 "1-99999999" 这类输入展开成超大集合
        if value and any(int(n) > MAX_TERM_MONTHS for n in re.findall(r"\d+", value)):
            raise ValueError(f"recast_months_text values must be <= {MAX_TERM_MONTHS}")
        return value


class ScheduleRowModel(BaseModel):
    idx: int
    date: Optional[str]
    payment: float
    interest: float
    principal: float
    extra: float
    total: float
    balance: float
    recast: bool
    new_payment: Optional[float]
    forgiven: float


class PaymentSegmentModel(BaseModel):
    start: int
    payment: float


class ScheduleResponse(BaseModel):
    rows: List[ScheduleRowModel]
    total_interest: float
    total_paid: float
    payoff_month: int
    segments: List[PaymentSegmentModel]
    total_forgiveness: float
    # 累计曲线（图表用）
    cumulative_interest: List[float]
    cumulative_principal: List[float]
    baseline_total_interest: float
    baseline_payoff_month: int
    interest_saved: float
    months_saved: int


def _to_params(body: ScheduleRequest) -> LoanParams:
    # 请求体 -> 引擎参数：展开追加条目、合并两种重算期数输入
    items = [
        ExtraItem(
            month=item.month,
            amount=item.amount,
            recurring=item.recurring,
            recurring_quantity=item.recurring_quantity,
            recurring_frequency=item.recurring_frequency,
            forgiveness=item.forgiveness,
        )
        for item in body.extras
    ]
    recast = set(body.recast_months)
    recast.update(parse_month_input(body.recast_months_text or "", max_month=body.term_months))
    return LoanParams(
        principal=body.principal,
        annual_rate_pct=body.annual_rate_pct,
        term_months=body.term_months,
        start_ym=body.start_ym,
        extras=map_extras(items, body.term_months),
        recast_months=frozenset(recast),
        auto_recast_on_extra=body.auto_recast_on_extra,
        forgiveness=map_forgiveness(items, body.term_months),
    )


def _compare(body: ScheduleRequest) -> tuple[LoanParams, BaselineComparison]:
    try:
        params = _to_params(body)
        comparison = compare_with_baseline(params)
    except ValueError as e:
        logger.warning("rejected schedule parameters: %s", e)
        raise HTTPException(status_code=400, detail=str(e))
    return params, comparison


@app.get("/health", tags=["health"])
@limiter.exempt
def health() -> dict:
    return {"status": "ok"}


@app.post(
    "/v1/schedules:build",
    tags=["schedule"],
    responses={400: {"description": "Invalid loan parameters"}},
)
@limiter.limit(DEFAULT_RATE_LIMIT)
def build(request: Request, body: ScheduleRequest, _=Depends(require_api_key)) -> ScheduleResponse:
    _, comparison = _compare(body)
    result = comparison.result
    _ensure_row_limit(len(result.rows), "schedule")

    return ScheduleResponse(
        rows=[
            ScheduleRowModel(
                idx=row.idx,
                date=row.date,
                payment=row.payment,
                interest=row.interest,
                principal=row.principal,
                extra=row.extra,
                total=row.total,
                balance=row.balance,
                recast=row.recast,
                new_payment=row.new_payment,
                forgiven=row.forgiven,
            )
            for row in result.rows
        ],
        total_interest=float(result.total_interest),
        total_paid=float(result.total_paid),
        payoff_month=result.payoff_month,
        segments=[PaymentSegmentModel(start=s.start, payment=s.payment) for s in result.segments],
        total_forgiveness=float(result.total_forgiveness),
        cumulative_interest=result.cumulative_interest(),
        cumulative_principal=result.cumulative_principal(),
        baseline_total_interest=float(comparison.baseline.total_interest),
        baseline_payoff_month=comparison.baseline.payoff_month,
        interest_saved=float(comparison.interest_saved),
        months_saved=comparison.months_saved,
    )


@app.post(
    "/v1/schedules:export-csv",
    tags=["schedule"],
    responses={400: {"description": "Invalid loan parameters"}},
)
@limiter.limit(EXPORT_RATE_LIMIT)
def export_csv(request: Request, body: ScheduleRequest, _=Depends(require_api_key)):
    """导出还款计划 CSV（逐期原样输出）。"""
    _, comparison = _compare(body)
    _ensure_row_limit(len(comparison.result.rows), "schedule")

    data = _schedule_to_csv(comparison.result.rows).encode("utf-8")
    _ensure_export_size(len(data))
    logger.info("exported csv schedule: %d rows, %d bytes", len(comparison.result.rows), len(data))

    return StreamingResponse(
        BytesIO(data),
        media_type="text/csv",
        headers={
            "Content-Disposition": "attachment; filename=amortization_recast_schedule.csv",
            "X-Payoff-Month": str(comparison.result.payoff_month),
        },
    )


@app.post(
    "/v1/schedules:export-zip",
    tags=["schedule"],
    responses={400: {"description": "Invalid loan parameters"}},
)
@limiter.limit(EXPORT_RATE_LIMIT)
def export_zip(request: Request, body: ScheduleRequest, _=Depends(require_api_key)):
    """导出 ZIP：还款计划 Excel、基准方案 Excel、分析报告 PDF。"""
    params, comparison = _compare(body)

    _ensure_row_limit(len(comparison.result.rows), "schedule")
    _ensure_row_limit(len(comparison.baseline.rows), "baseline_schedule")

    pdf_bytes = generate_pdf(comparison=comparison, params=params)

    zip_buf = BytesIO()
    with zipfile.ZipFile(zip_buf, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("还款计划明细.xlsx", _schedule_to_xlsx(comparison.result.rows))
        zf.writestr("基准方案明细.xlsx", _schedule_to_xlsx(comparison.baseline.rows))
        zf.writestr("还款分析报告.pdf", pdf_bytes)
    zip_buf.seek(0)

    zip_bytes = zip_buf.getvalue()
    _ensure_export_size(len(zip_bytes))
    logger.info("exported zip report: %d bytes", len(zip_bytes))

    return StreamingResponse(
        BytesIO(zip_bytes),
        media_type="application/zip",
        headers={
            "Content-Disposition": "attachment; filename=mortgage_recast_report.zip; "
            f"filename*=UTF-8''{quote('还款分析报告.zip')}",
            "X-Interest-Saved": f"{float(comparison.interest_saved):.2f}",
            "X-Months-Saved": str(comparison.months_saved),
        },
    )


def _schedule_to_csv(rows: Sequence[ScheduleRow]) -> str:
    buf = StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for row in rows:
        writer.writerow([
            row.idx,
            row.date or "",
            f"{row.payment:.2f}",
            f"{row.interest:.2f}",
            f"{row.principal:.2f}",
            f"{row.extra:.2f}",
            f"{row.forgiven:.2f}",
            f"{row.total:.2f}",
            f"{row.balance:.2f}",
            "YES" if row.recast else "",
            f"{row.new_payment:.2f}" if row.new_payment is not None else "",
        ])
    return buf.getvalue()


def _schedule_to_xlsx(rows: Sequence[ScheduleRow]) -> bytes:
    """将还款计划导出为 Excel（xlsx），返回二进制。"""
    wb = Workbook()
    ws = wb.active
    ws.title = "Schedule"

    headers = ["期数", "年月", "月供", "利息", "本金", "追加还款", "本金减免", "实际支出", "余额", "新月供"]
    ws.append(headers)

    header_font = Font(bold=True, name="Arial", size=11, color="FFFFFF")
    body_font = Font(name="Arial", size=10)
    header_fill = PatternFill("solid", fgColor="0F172A")
    alt_fill = PatternFill("solid", fgColor="F8FAFC")
    recast_fill = PatternFill("solid", fgColor="ECFDF3")
    border = Border(bottom=Side(style="thin", color="E2E8F0"))
    align_right = Alignment(horizontal="right")
    align_center = Alignment(horizontal="center")

    for cell in ws[1]:
        cell.font = header_font
        cell.fill = header_fill
        cell.alignment = align_center

    for idx, row in enumerate(rows, start=2):
        ws.append([
            row.idx,
            row.date or "",
            round(row.payment, 2),
            round(row.interest, 2),
            round(row.principal, 2),
            round(row.extra, 2),
            round(row.forgiven, 2),
            round(row.total, 2),
            round(row.balance, 2),
            round(row.new_payment, 2) if row.new_payment is not None else "",
        ])
        for col_idx in range(1, len(headers) + 1):
            cell = ws.cell(row=idx, column=col_idx)
            cell.font = body_font
            cell.alignment = align_right if col_idx > 2 else align_center
            # 重算月供的那一期整行高亮
            if row.recast:
                cell.fill = recast_fill
            elif idx % 2 == 0:
                cell.fill = alt_fill
            cell.border = border

    # 列宽
    widths = [8, 10, 14, 14, 14, 14, 14, 14, 16, 14]
    for i, w in enumerate(widths, start=1):
        ws.column_dimensions[get_column_letter(i)].width = w

    buf = BytesIO()
    wb.save(buf)
    buf.seek(0)
    return buf.getvalue()


def _ensure_row_limit(rows: int, label: str) -> None:
    if rows > MAX_SCHEDULE_ROWS:
        raise HTTPException(status_code=413, detail=f"{label} too large, exceeds {MAX_SCHEDULE_ROWS} rows limit")


def _ensure_export_size(size_bytes: int) -> None:
    if size_bytes > MAX_EXPORT_BYTES:
        raise HTTPException(status_code=413, detail="export file too large")
