from __future__ import annotations

from gradefix.services.reconciler import recalculate_test_results


def run_test_recalculation(test_id: str) -> int:
    return recalculate_test_results(test_id)
