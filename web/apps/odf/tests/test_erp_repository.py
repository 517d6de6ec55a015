from decimal import Decimal

from sqlalchemy.orm import Session

from apps.odf.domain import LineType
from apps.odf.erp import (
    ErpAutomationTask,
    ErpInProgress,
    affaire_code_for,
    ping,
    transfer_number_for,
)


def test_get_lines_resolves_coupon_parent(erp, coupon_order):
    lines = erp.get_lines(1)
    assert [ln.type for ln in lines] == [LineType.ARTICLE, LineType.COUPON]
    coupon = lines[1]
    assert coupon.parent_article_code == "88455-10"
    assert coupon.parent_serial == "SN-1001"
    assert lines[0].designation == "Récepteur SPS986"


def test_get_order_missing_is_none(erp):
    assert erp.get_order(123) is None


def test_unique_id_is_write_once(erp, coupon_order):
    assert erp.record_unique_id(1, "U-1") == "U-1"
    assert erp.record_unique_id(1, "U-2") == "U-1"
    assert erp.get_order(1).unique_id == "U-1"


def test_ensure_affaire_is_idempotent(erp, coupon_order):
    assert erp.ensure_affaire(1, "PCD0001") == "APITODF_0001"
    assert erp.ensure_affaire(1, "PCD0001") == "APITODF_0001"
    assert erp.get_order(1).affaire_code == "APITODF_0001"


def test_stock_levels_default_to_zero(erp, coupon_order):
    snap = erp.stock_levels(["88455-10", "UNKNOWN"])
    assert snap.available("88455-10") == 5
    assert snap.available("UNKNOWN") == 0


def test_available_coupon_serials_oldest_first_with_exclusions(erp, coupon_order):
    assert erp.available_coupon_serials("88455-10-C", 2) == ["C-001", "C-002"]
    assert erp.available_coupon_serials("88455-10-C", 2, exclude={"C-001"}) == ["C-002", "C-003"]
    assert erp.available_coupon_serials("88455-10-C", 0) == []


def test_costs(erp, coupon_order):
    assert erp.article_cost("88455-10") == Decimal("1500")
    assert erp.article_cost("NOPE") == Decimal("0")
    assert erp.coupon_cost_basis("88455-10-C", "C-002") == Decimal("13.5")


def test_serial_model_cache(erp):
    assert erp.serial_model("SN-1") is None
    erp.save_serial_model("SN-1", "R10")
    erp.save_serial_model("SN-1", "R12i")
    assert erp.serial_model("SN-1") == "R12i"


def test_fabrication_queue_and_cleanup(erp, erp_engine, coupon_order):
    with Session(erp_engine) as s:
        s.add(ErpInProgress(pcdnum="PCD0001"))
        s.commit()

    task_id = erp.submit_fabrication("PCD0001", "E;BDFSTK;")
    assert isinstance(task_id, int)
    assert erp.task_status(task_id) == ("P", None)
    assert erp.pending_task("PCD0001") == task_id
    assert erp.pending_task("PCD0002") is None
    with Session(erp_engine) as s:
        s.get(ErpAutomationTask, task_id).status = "T"
        s.commit()
    assert erp.task_status(task_id) == ("T", None)
    assert erp.pending_task("PCD0001") is None
    assert erp.task_status(999)[0] == "E"

    assert erp.delete_in_progress("PCD0001") == 1
    erp.close_order(1)
    assert erp.get_order(1).is_closed


def test_naming_helpers_and_ping(erp_engine):
    assert affaire_code_for("PCD-00042") == "APITODF_00042"
    assert transfer_number_for("PCD0001") == "BTRPCD0001"
    assert ping(erp_engine) is True


def test_surrogate_keys_are_assigned_on_insert(erp, erp_engine):
    first = erp.submit_fabrication("PCD0001", "E;BDFSTK;")
    second = erp.submit_fabrication("PCD0001", "E;BDFSTK;")
    assert second > first
    assert erp.pending_task("PCD0001") == second

    with Session(erp_engine) as s:
        row = ErpInProgress(pcdnum="PCD0009")
        s.add(row)
        s.commit()
        assert row.id is not None
