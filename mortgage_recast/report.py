from __future__ import annotations

from datetime import date
from io import BytesIO
from typing import Tuple

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.cidfonts import UnicodeCIDFont
from reportlab.platypus import (
    SimpleDocTemplate,
    Paragraph,
    Spacer,
    Table,
    TableStyle,
    PageBreak,
    Flowable,
)

from mortgage_recast.calculator import BaselineComparison, LoanParams, interest_by_year


# --- Setup Fonts and Colors ---

FONT_NAME = "STSong-Light"
FONT_NAME_BOLD = "STSong-Light"  # CID 字体使用 <b> 标签加粗
NUM_FONT = "Helvetica"  # 数字/英文使用西文字体，避免拥挤
pdfmetrics.registerFont(UnicodeCIDFont(FONT_NAME))

# 年度利息表最多展示的年数
MAX_YEARS_IN_TABLE = 40
# 逐期明细表展示的期数
MONTHS_IN_TABLE = 12

PALETTE = {
    "primary_text": "#1E293B",
    "secondary_text": "#64748B",
    "accent_green": "#10B981",
    "highlight_bg": "#F1F5F9",
    "border": "#E2E8F0",
    "white": "#FFFFFF",
    "dark_header": "#0F172A",
}


def _fmt_money(v: float) -> str:
    return f"${v:,.2f}"


def _fmt_money_font(v: float) -> str:
    return f"<font name='{NUM_FONT}'>{_fmt_money(v)}</font>"


def _fmt_percent_font(v: float) -> str:
    return f"<font name='{NUM_FONT}'>{v:.2f}%</font>"


def _months_to_years_months(m: int) -> Tuple[int, int]:
    return m // 12, m % 12


def _score_label(saved: float, extra_paid: float) -> str:
    """按“每追加 1 元省下多少利息”给出评价。"""
    if extra_paid <= 0:
        return "未追加还款"
    ratio = saved / extra_paid
    if ratio >= 0.5:
        return "追加还款效率极高"
    if ratio >= 0.2:
        return "追加还款效率较高"
    if ratio >= 0.1:
        return "追加还款收益一般"
    return "追加还款收益较低"


class PageHeader(Flowable):
    """一条水平分割线。"""

    def __init__(self, width, height=0):
        super().__init__()
        self.width = width
        self.height = height

    def draw(self):
        self.canv.setStrokeColor(colors.HexColor(PALETTE["border"]))
        self.canv.setLineWidth(0.4)
        self.canv.line(0, self.height, self.width, self.height)


def _header_footer(canvas, doc):
    """每页页眉页脚。"""
    canvas.saveState()
    canvas.setFont(FONT_NAME, 9)
    canvas.setFillColor(colors.HexColor(PALETTE["secondary_text"]))
    canvas.setStrokeColor(colors.HexColor(PALETTE["border"]))
    canvas.setLineWidth(0.4)
    canvas.line(doc.leftMargin, doc.height + doc.topMargin - 9 * mm, doc.width + doc.leftMargin, doc.height + doc.topMargin - 9 * mm)
    canvas.drawString(doc.leftMargin, doc.height + doc.topMargin - 7 * mm, "还款计划 ▲ 追加还款与重算月供")

    canvas.setFont(FONT_NAME, 8)
    canvas.drawString(doc.leftMargin, 10 * mm, f"生成日期: {date.today().strftime('%Y-%m-%d')}")
    canvas.drawRightString(doc.width + doc.leftMargin, 10 * mm, f"第 {doc.page} 页")
    canvas.restoreState()


def _table_style(header_bg: str) -> TableStyle:
    return TableStyle(
        [
            ("FONT", (0, 0), (-1, -1), FONT_NAME, 9.6),
            ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor(header_bg)),
            ("TEXTCOLOR", (0, 0), (-1, 0), colors.HexColor(PALETTE["white"])),
            ("ALIGN", (1, 1), (-1, -1), "RIGHT"),
            ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
            ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.HexColor("#FFFFFF"), colors.HexColor(PALETTE["highlight_bg"])]),
            ("LINEBELOW", (0, -1), (-1, -1), 0.8, colors.HexColor(PALETTE["border"])),
            ("PADDING", (0, 0), (-1, -1), 6),
        ]
    )


def generate_pdf(*, comparison: BaselineComparison, params: LoanParams) -> bytes:
    """根据 compare_with_baseline 的结果生成 PDF，返回 PDF 二进制。

    首页“贷款信息”使用调用方传入的原始参数，而不是从还款表反推。
    """
    result = comparison.result
    baseline = comparison.baseline

    extra_paid = sum(row.extra for row in result.rows)
    recast_count = sum(1 for row in result.rows if row.recast)
    saved_years, saved_months = _months_to_years_months(comparison.months_saved)
    label = _score_label(comparison.interest_saved, extra_paid)

    # --- Define Styles ---
    styles = getSampleStyleSheet()

    base_style = ParagraphStyle(
        "base_cn",
        parent=styles["BodyText"],
        fontName=FONT_NAME,
        fontSize=10.2,
        leading=19,
        wordWrap="CJK",
        textColor=colors.HexColor(PALETTE["primary_text"]),
    )

    title_style = ParagraphStyle(
        "title_cn",
        parent=styles["Title"],
        fontName=FONT_NAME_BOLD,
        fontSize=25,
        leading=33,
        textColor=colors.HexColor(PALETTE["primary_text"]),
        spaceAfter=10,
    )

    h2_style = ParagraphStyle(
        "h2_cn",
        parent=styles["Heading2"],
        fontName=FONT_NAME_BOLD,
        fontSize=16.5,
        leading=23,
        textColor=colors.HexColor(PALETTE["primary_text"]),
        spaceBefore=8,
        spaceAfter=8,
    )

    big_green_style = ParagraphStyle(
        "big_green",
        parent=styles["Title"],
        fontName=NUM_FONT,
        fontSize=40,
        leading=48,
        textColor=colors.HexColor(PALETTE["accent_green"]),
        alignment=1,
        spaceBefore=6,
        spaceAfter=6,
    )

    tag_style = ParagraphStyle(
        "tag",
        parent=styles["BodyText"],
        fontName=FONT_NAME,
        fontSize=12,
        leading=16,
        textColor=colors.HexColor(PALETTE["accent_green"]),
        backColor=colors.HexColor("#ECFDF3"),
        borderPadding=7,
        alignment=1,
        spaceAfter=8,
    )

    buf = BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=A4,
        leftMargin=20 * mm,
        rightMargin=20 * mm,
        topMargin=32 * mm,
        bottomMargin=22 * mm,
        title="Mortgage Recast - 还款分析报告",
        author="Mortgage Recast",
    )

    story = []

    # -------------------- 第 1 页：核心摘要 --------------------
    story.append(Spacer(1, 3 * mm))
    story.append(Paragraph("<b>还款计划分析</b>", title_style))
    story.append(PageHeader(doc.width))
    story.append(Spacer(1, 6 * mm))

    info_style = ParagraphStyle("info_cn", parent=base_style, leading=17)
    start_text = params.start_ym or "未填写"
    info_data = [
        ["贷款信息", "本方案", "追加与重算"],
        [
            Paragraph(
                f"贷款金额：{_fmt_money_font(float(params.principal))}<br/>"
                f"年利率：{_fmt_percent_font(float(params.annual_rate_pct))}<br/>"
                f"贷款期限：{int(params.term_months)} 期<br/>"
                f"首期年月：{start_text}",
                info_style,
            ),
            Paragraph(
                f"初始月供：{_fmt_money_font(result.segments[0].payment)}<br/>"
                f"还清期数：第 {result.payoff_month} 期<br/>"
                f"总利息：{_fmt_money_font(result.total_interest)}<br/>"
                f"总支出：{_fmt_money_font(result.total_paid)}",
                info_style,
            ),
            Paragraph(
                f"追加还款合计：{_fmt_money_font(extra_paid)}<br/>"
                f"重算月供次数：{recast_count} 次<br/>"
                f"本金减免合计：{_fmt_money_font(result.total_forgiveness)}<br/>"
                f"追加即重算：{'是' if params.auto_recast_on_extra else '否'}",
                info_style,
            ),
        ],
    ]
    info_table = Table(info_data, colWidths=[58 * mm, 58 * mm, 54 * mm])
    info_table.setStyle(
        TableStyle(
            [
                ("FONT", (0, 0), (-1, -1), FONT_NAME, 9.7),
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor(PALETTE["highlight_bg"])),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.HexColor(PALETTE["secondary_text"])),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("BOX", (0, 0), (-1, -1), 0.8, colors.HexColor(PALETTE["border"])),
                ("INNERGRID", (0, 0), (-1, -1), 0.25, colors.HexColor(PALETTE["border"])),
                ("PADDING", (0, 0), (-1, -1), 10),
            ]
        )
    )
    story.append(info_table)
    story.append(Spacer(1, 6 * mm))

    story.append(Paragraph("相比基准方案预计节省利息", ParagraphStyle(name="saving_title_cn", parent=base_style, alignment=1, fontSize=11)))
    story.append(Paragraph(_fmt_money_font(comparison.interest_saved), big_green_style))
    story.append(Paragraph(label, tag_style))
    story.append(
        Paragraph(
            f"基准方案（不追加、不重算）总利息 {_fmt_money_font(baseline.total_interest)}，"
            f"第 {baseline.payoff_month} 期还清；本方案提前 {saved_years} 年 {saved_months} 个月结清。",
            base_style,
        )
    )

    # 月供分段
    story.append(Spacer(1, 5 * mm))
    story.append(Paragraph("月供分段", h2_style))
    segment_data = [["起始期数", "月供"]]
    for seg in result.segments:
        segment_data.append([str(seg.start), _fmt_money(seg.payment)])
    segment_table = Table(segment_data, colWidths=[60 * mm, 60 * mm])
    segment_table.setStyle(_table_style(PALETTE["dark_header"]))
    story.append(segment_table)

    story.append(PageBreak())

    # -------------------- 第 2 页：年度利息 --------------------
    story.append(Paragraph("年度利息对比", h2_style))
    story.append(PageHeader(doc.width))
    story.append(Spacer(1, 4 * mm))

    by_year = interest_by_year(result.rows)
    base_by_year = interest_by_year(baseline.rows)
    year_data = [["贷款年度", "本方案利息", "基准方案利息"]]
    for year in sorted(base_by_year)[:MAX_YEARS_IN_TABLE]:
        year_data.append([
            f"第 {year} 年",
            _fmt_money(by_year.get(year, 0.0)),
            _fmt_money(base_by_year[year]),
        ])
    year_table = Table(year_data, colWidths=[40 * mm, 60 * mm, 60 * mm], repeatRows=1)
    year_table.setStyle(_table_style(PALETTE["dark_header"]))
    story.append(year_table)

    # 前若干期明细
    story.append(Spacer(1, 6 * mm))
    story.append(Paragraph(f"前 {MONTHS_IN_TABLE} 期明细", h2_style))
    month_data = [["期数", "年月", "月供", "利息", "本金", "追加还款", "余额"]]
    for row in result.rows[:MONTHS_IN_TABLE]:
        month_data.append([
            str(row.idx) + (" *" if row.recast else ""),
            row.date or "-",
            _fmt_money(row.payment),
            _fmt_money(row.interest),
            _fmt_money(row.principal),
            _fmt_money(row.extra + row.forgiven),
            _fmt_money(row.balance),
        ])
    month_table = Table(
        month_data,
        colWidths=[14 * mm, 18 * mm, 26 * mm, 26 * mm, 26 * mm, 26 * mm, 34 * mm],
        repeatRows=1,
    )
    month_table.setStyle(_table_style(PALETTE["dark_header"]))
    story.append(month_table)
    story.append(
        Paragraph(
            "注：带 * 的期数在期末重算了月供；追加还款一列含本金减免。",
            ParagraphStyle("month_note", parent=base_style, fontSize=8.5, leading=14,
                           textColor=colors.HexColor(PALETTE["secondary_text"])),
        )
    )

    story.append(Spacer(1, 12 * mm))
    story.append(PageHeader(doc.width))
    story.append(Spacer(1, 4 * mm))
    story.append(
        Paragraph(
            "<b>免责声明：</b>本报告基于您提供的数据进行数学模拟，未计入税费、保险与提前还款手续费，结果仅供参考；"
            "实际还款请以贷款机构出具的还款计划为准。",
            ParagraphStyle(
                "disclaimer",
                parent=base_style,
                fontSize=8.5,
                leading=14,
                textColor=colors.HexColor(PALETTE["secondary_text"]),
            ),
        )
    )

    doc.build(story, onFirstPage=_header_footer, onLaterPages=_header_footer)
    return buf.getvalue()
