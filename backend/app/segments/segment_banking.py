from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.services.banking_service import (
    deactivate_subaccount,
    get_subaccount,
    setup_subaccount,
    subaccount_summary,
    update_subaccount,
)
from app.utils.auth import require_user

banking_bp = Blueprint("banking_bp", __name__, url_prefix="/api/banking")


@banking_bp.get("/subaccount")
def get_banking():
    user = require_user()
    row = get_subaccount(user.id)
    if row is None:
        return jsonify({"ok": True, "subaccount": None}), 200
    return jsonify({"ok": True, "subaccount": subaccount_summary(row)}), 200


@banking_bp.post("/subaccount")
def create_banking():
    user = require_user()
    row = setup_subaccount(user.id, request.get_json(silent=True) or {})
    return jsonify({"ok": True, "subaccount": subaccount_summary(row)}), 201


@banking_bp.put("/subaccount")
def update_banking():
    user = require_user()
    row = update_subaccount(user.id, request.get_json(silent=True) or {})
    return jsonify({"ok": True, "subaccount": subaccount_summary(row)}), 200


@banking_bp.delete("/subaccount")
def delete_banking():
    user = require_user()
    row = deactivate_subaccount(user.id)
    return jsonify({"ok": True, "subaccount": row.to_dict()}), 200
