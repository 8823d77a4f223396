"""Mortgage Recast（固定利率房贷还款计划）Python 包。

常用导入：
    from mortgage_recast import LoanParams, build_schedule

调试运行：
    python -m mortgage_recast

该调试入口会：
1) 跑一组示例 build_schedule（含追加还款与重算月供）
2) 生成一份示例 PDF 到 output/ 目录
"""

from .calculator import (
    InvalidParameters,
    LoanParams,
    ScheduleResult,
    ScheduleRow,
    build_schedule,
    compare_with_baseline,
)

__all__ = [
    "InvalidParameters",
    "LoanParams",
    "ScheduleResult",
    "ScheduleRow",
    "build_schedule",
    "compare_with_baseline",
]
