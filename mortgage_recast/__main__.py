from __future__ import annotations

import logging
import os

from mortgage_recast.calculator import LoanParams, compare_with_baseline
from mortgage_recast.report import generate_pdf


logger = logging.getLogger("mortgage_recast")


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    # 示例：10 万、6%、30 年，首月追加 1000 并自动重算月供
    params = LoanParams(
        principal=100_000,
        annual_rate_pct=6,
        term_months=360,
        start_ym="2025-01",
        extras={1: 1000.0},
        auto_recast_on_extra=True,
    )
    comparison = compare_with_baseline(params)
    result = comparison.result

    logger.info("initial payment: %.2f", result.segments[0].payment)
    logger.info("payoff month: %d, total interest: %.2f, total paid: %.2f",
                result.payoff_month, result.total_interest, result.total_paid)
    logger.info("interest saved vs baseline: %.2f (%d months)", comparison.interest_saved, comparison.months_saved)

    os.makedirs("output", exist_ok=True)
    pdf_path = os.path.join("output", "sample_report.pdf")
    with open(pdf_path, "wb") as f:
        f.write(generate_pdf(comparison=comparison, params=params))
    logger.info("sample report written to %s", pdf_path)


if __name__ == "__main__":
    main()
