"""
Tests for formula administration against a mocked asyncpg pool.

Each test patches screener.services.formula_admin.get_db_pool and inspects the
statements issued on the mocked connection.
"""

from unittest.mock import AsyncMock, patch

import pytest

from screener.models.enums import FormulaScope
from screener.models.schemas import FormulaCreate, FormulaEvaluateRequest, FormulaUpdate
from screener.services import formula_admin
from screener.services.formula_evaluator import FormulaSyntaxError
from screener.services.scope_resolution import FormulaAdminError, FormulaNotFoundError
from screener.sql.formula_queries import (
    ASSIGN_ALL_COMPANIES,
    ASSIGN_ALL_SECTORS,
    CLEAR_ACTIVE_GLOBAL,
    CLEAR_COMPANY_OVERRIDES,
    CLEAR_SECTOR_OVERRIDES,
    DELETE_FORMULA,
    DELETE_SIGNALS_FOR_FORMULA,
    REASSIGN_COMPANY_OVERRIDES,
    REASSIGN_SECTOR_OVERRIDES,
    SET_ACTIVE_GLOBAL,
)
from screener.tests.conftest import formula_row


pytestmark = pytest.mark.asyncio


def patched_pool(mock_db_pool):
    return patch(
        "screener.services.formula_admin.get_db_pool",
        new=AsyncMock(return_value=mock_db_pool),
    )


def executed(mock_conn):
    """Statements passed to conn.execute, in order."""
    return [call.args[0] for call in mock_conn.execute.call_args_list]


class TestCrud:

    async def test_list_formulas(self, mock_db_pool, mock_conn, make_formula) -> None:
        mock_conn.fetch.return_value = [formula_row(make_formula("g", active=True))]

        with patched_pool(mock_db_pool):
            formulas = await formula_admin.list_formulas()

        assert [f.id for f in formulas] == ["g"]
        assert formulas[0].isActiveGlobal

    async def test_get_missing_formula(self, mock_db_pool, mock_conn) -> None:
        mock_conn.fetchrow.return_value = None

        with patched_pool(mock_db_pool):
            with pytest.raises(FormulaNotFoundError):
                await formula_admin.get_formula("missing")

    async def test_create_rejects_bad_syntax_before_writing(self, mock_db_pool, mock_conn) -> None:
        payload = FormulaCreate(name="bad", condition="AND(Q12 >")

        with patched_pool(mock_db_pool):
            with pytest.raises(FormulaSyntaxError):
                await formula_admin.create_formula(payload)

        mock_conn.fetchrow.assert_not_called()

    async def test_create_requires_scope_value(self, mock_db_pool) -> None:
        payload = FormulaCreate(name="s", scope=FormulaScope.SECTOR, condition="Q12 > 0")

        with patched_pool(mock_db_pool):
            with pytest.raises(FormulaAdminError):
                await formula_admin.create_formula(payload)

    async def test_first_global_becomes_active(self, mock_db_pool, mock_conn, make_formula) -> None:
        mock_conn.fetch.return_value = []
        mock_conn.fetchrow.return_value = formula_row(make_formula("new", active=True))

        with patched_pool(mock_db_pool):
            formula = await formula_admin.create_formula(FormulaCreate(name="new", condition="Q12 >= 20%"))

        args = mock_conn.fetchrow.call_args.args
        assert args[3] == "global"
        assert args[9] is True
        assert formula.isActiveGlobal
        mock_conn.transaction.assert_called_once()

    async def test_second_global_is_not_active(self, mock_db_pool, mock_conn, make_formula) -> None:
        mock_conn.fetch.return_value = [formula_row(make_formula("g", active=True))]
        mock_conn.fetchrow.return_value = formula_row(make_formula("new"))

        with patched_pool(mock_db_pool):
            await formula_admin.create_formula(FormulaCreate(name="new", condition="Q12 >= 20%"))

        assert mock_conn.fetchrow.call_args.args[9] is False

    async def test_update_refuses_disabling_only_global(self, mock_db_pool, mock_conn, make_formula) -> None:
        mock_conn.fetch.return_value = [formula_row(make_formula("g", active=True))]

        with patched_pool(mock_db_pool):
            with pytest.raises(FormulaAdminError):
                await formula_admin.update_formula("g", FormulaUpdate(enabled=False))

        mock_conn.fetchrow.assert_not_called()

    async def test_update_applies_partial_changes(self, mock_db_pool, mock_conn, make_formula) -> None:
        mock_conn.fetch.return_value = [
            formula_row(make_formula("g", active=True)),
            formula_row(make_formula("g2", condition="Q13 > 0")),
        ]
        mock_conn.fetchrow.return_value = formula_row(make_formula("g2", condition="Q13 > 0", priority=4))

        with patched_pool(mock_db_pool):
            formula = await formula_admin.update_formula("g2", FormulaUpdate(priority=4))

        args = mock_conn.fetchrow.call_args.args
        assert args[1] == "g2"
        assert args[5] == "Q13 > 0"
        assert args[7] == 4
        assert args[9] is False
        assert formula.priority == 4

    async def test_update_moves_active_flag_when_rescoped(self, mock_db_pool, mock_conn, make_formula) -> None:
        mock_conn.fetch.return_value = [
            formula_row(make_formula("g", active=True)),
            formula_row(make_formula("g2")),
        ]
        mock_conn.fetchrow.return_value = formula_row(
            make_formula("g", scope=FormulaScope.SECTOR, scope_value="it")
        )

        with patched_pool(mock_db_pool):
            await formula_admin.update_formula("g", FormulaUpdate(scope=FormulaScope.SECTOR, scopeValue="it"))

        assert mock_conn.fetchrow.call_args.args[9] is False
        mock_conn.execute.assert_called_once_with(SET_ACTIVE_GLOBAL, "g2")

    async def test_update_unknown_formula(self, mock_db_pool, mock_conn) -> None:
        mock_conn.fetch.return_value = []

        with patched_pool(mock_db_pool):
            with pytest.raises(FormulaNotFoundError):
                await formula_admin.update_formula("missing", FormulaUpdate(priority=1))


class TestReplaceAndDelete:

    async def test_reassigns_and_deletes_in_one_transaction(self, mock_db_pool, mock_conn, make_formula) -> None:
        mock_conn.fetch.return_value = [
            formula_row(make_formula("g", active=True)),
            formula_row(make_formula("g2")),
        ]
        mock_conn.execute.side_effect = ["UPDATE 3", "UPDATE 1", "DELETE 4", "DELETE 1", "UPDATE 1"]

        with patched_pool(mock_db_pool):
            result = await formula_admin.replace_and_delete("g", "g2")

        assert result.companiesUpdated == 3
        assert result.sectorsUpdated == 1
        assert result.signalsDeleted == 4
        assert result.targetFormulaId == "g2"
        assert result.deletedFormulaId == "g"
        assert executed(mock_conn) == [
            REASSIGN_COMPANY_OVERRIDES,
            REASSIGN_SECTOR_OVERRIDES,
            DELETE_SIGNALS_FOR_FORMULA,
            DELETE_FORMULA,
            SET_ACTIVE_GLOBAL,
        ]
        assert mock_conn.execute.call_args_list[0].args[1:] == ("g", "g2")
        assert mock_conn.execute.call_args_list[-1].args[1:] == ("g2",)
        mock_conn.transaction.assert_called_once()

    async def test_refuses_deleting_only_global(self, mock_db_pool, mock_conn, make_formula) -> None:
        mock_conn.fetch.return_value = [formula_row(make_formula("g", active=True))]

        with patched_pool(mock_db_pool):
            with pytest.raises(FormulaAdminError):
                await formula_admin.replace_and_delete("g")

        mock_conn.execute.assert_not_called()

    async def test_delete_without_replacement_clears_overrides(self, mock_db_pool, mock_conn, make_formula) -> None:
        mock_conn.fetch.return_value = [
            formula_row(make_formula("g", active=True)),
            formula_row(make_formula("s", scope=FormulaScope.SECTOR, scope_value="it")),
        ]

        with patched_pool(mock_db_pool):
            result = await formula_admin.replace_and_delete("s")

        assert result.targetFormulaId is None
        assert mock_conn.execute.call_args_list[0].args[1:] == ("s", None)
        assert SET_ACTIVE_GLOBAL not in executed(mock_conn)


class TestAssignments:

    async def test_reset_clears_all_overrides(self, mock_db_pool, mock_conn, make_formula) -> None:
        mock_conn.fetch.return_value = [formula_row(make_formula("g"))]
        mock_conn.execute.side_effect = ["UPDATE 12", "UPDATE 2"]

        with patched_pool(mock_db_pool):
            result = await formula_admin.reset_all_to_global()

        assert executed(mock_conn) == [CLEAR_COMPANY_OVERRIDES, CLEAR_SECTOR_OVERRIDES]
        assert result.companiesUpdated == 12
        assert result.sectorsUpdated == 2

    async def test_reset_pins_to_global_formula(self, mock_db_pool, mock_conn, make_formula) -> None:
        mock_conn.fetch.return_value = [formula_row(make_formula("g"))]

        with patched_pool(mock_db_pool):
            result = await formula_admin.reset_all_to_global("g")

        assert executed(mock_conn) == [ASSIGN_ALL_COMPANIES, ASSIGN_ALL_SECTORS]
        assert result.targetFormulaId == "g"

    async def test_reset_refuses_scoped_target(self, mock_db_pool, mock_conn, make_formula) -> None:
        mock_conn.fetch.return_value = [
            formula_row(make_formula("g")),
            formula_row(make_formula("s", scope=FormulaScope.SECTOR, scope_value="it")),
        ]

        with patched_pool(mock_db_pool):
            with pytest.raises(FormulaAdminError):
                await formula_admin.reset_all_to_global("s")

        mock_conn.execute.assert_not_called()

    async def test_set_active_global(self, mock_db_pool, mock_conn, make_formula) -> None:
        mock_conn.fetch.return_value = [
            formula_row(make_formula("g", active=True)),
            formula_row(make_formula("g2")),
        ]
        mock_conn.fetchrow.return_value = formula_row(make_formula("g2", active=True))

        with patched_pool(mock_db_pool):
            formula = await formula_admin.set_active_global("g2")

        assert executed(mock_conn) == [CLEAR_ACTIVE_GLOBAL, SET_ACTIVE_GLOBAL]
        assert formula.isActiveGlobal


class TestResolutionAndPreview:

    async def test_resolve_formula_for_company(self, signal_store, make_formula, make_target) -> None:
        signal_store.formulas = [make_formula("g"), make_formula("s", scope=FormulaScope.SECTOR, scope_value="it")]
        signal_store.add_company(make_target("c1", sector_id="it"))

        formula = await formula_admin.resolve_formula_for_company("c1", store=signal_store)

        assert formula.id == "s"

    async def test_resolve_unknown_company(self, signal_store) -> None:
        with pytest.raises(LookupError):
            await formula_admin.resolve_formula_for_company("missing", store=signal_store)

    async def test_preview_with_literal_environment(self) -> None:
        request = FormulaEvaluateRequest(condition="Q12 >= 20%", environment={"Q12": 0.25}, signal="Go")

        response = await formula_admin.preview_formula(request)

        assert response.result is True
        assert response.resultType == "boolean"
        assert response.mappedSignal == "Go"

    async def test_preview_reports_missing(self) -> None:
        response = await formula_admin.preview_formula(FormulaEvaluateRequest(condition="Q12 > 0"))

        assert response.missing
        assert response.result is None
        assert response.mappedSignal is None

    async def test_preview_with_company_data(self, signal_store, make_target, buy_groups) -> None:
        signal_store.add_company(make_target("c1"), buy_groups)
        request = FormulaEvaluateRequest(condition='IF(Q12 >= 20%, "BUY", "No Signal")', companyId="c1")

        response = await formula_admin.preview_formula(request, store=signal_store)

        assert response.result == "BUY"
        assert response.mappedSignal == "BUY"

    async def test_preview_traces_literal_references(self) -> None:
        request = FormulaEvaluateRequest(
            condition="AND(Q12 >= 20%, P12 > 0, OPM[P11] > 0)",
            environment={"Q12": 0.25, "P12": None},
        )

        response = await formula_admin.preview_formula(request)

        trace = [(ref.name, ref.value, ref.quarter) for ref in response.references]
        assert trace == [("Q12", 0.25, None), ("P12", None, None), ("OPM[Q12]", None, None)]

    async def test_preview_traces_company_quarters(self, signal_store, make_target, buy_groups) -> None:
        signal_store.add_company(make_target("c1"), buy_groups)
        request = FormulaEvaluateRequest(
            condition="OR(Q12 >= 20%, P12 > 0, OPM[Q11] > 0, Net_Profit[Q12] > 0, OPM[Q3] > 0)",
            companyId="c1",
        )

        response = await formula_admin.preview_formula(request, store=signal_store)

        trace = {ref.name: ref for ref in response.references}
        assert list(trace) == ["Q12", "P12", "OPM[Q11]", "Net_Profit[Q12]", "OPM[Q3]"]
        assert trace["Q12"].value == pytest.approx(0.25)
        assert trace["Q12"].quarter == "Mar 2024"
        assert trace["P12"].quarter == "Dec 2023"
        assert trace["OPM[Q11]"].value == pytest.approx(0.10)
        assert trace["OPM[Q11]"].quarter == "Dec 2023"
        assert trace["Net_Profit[Q12]"].value is None
        assert trace["Net_Profit[Q12]"].quarter == "Mar 2024"
        assert trace["OPM[Q3]"].value is None
        assert trace["OPM[Q3]"].quarter is None
