import logging
from datetime import date
from typing import Optional

from fastapi import Body, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import get_settings
from csv_utils import safe_filename
from database import SessionLocal
from errors import (
    ConflictError,
    ConsistencyError,
    LedgerError,
    NotFoundError,
    OrphanedTransferLeg,
    ValidationError,
)
from models import Account, Category, ExportManifest, Payee, Transaction
from schemas import (
    AccountIn,
    AccountUpdate,
    CategoryIn,
    CategoryUpdate,
    CurrencyRenameIn,
    DuplicateCheckIn,
    ExportRequest,
    ManifestIn,
    PayeeDuplicateCheckIn,
    PayeeImportIn,
    PayeeIn,
    PayeeUpdate,
    SettingIn,
    TransactionImportIn,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    AccountService,
    CategoryService,
    DuplicateDetectionService,
    ExportManifestService,
    ExportService,
    ImportService,
    PayeeService,
    SettingsService,
    SystemService,
    TransactionFilters,
    TransactionService,
)

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()

app = FastAPI(title="Ledger", version=APP_VERSION)

ERROR_STATUS = (
    (NotFoundError, 404),
    (ValidationError, 400),
    (ConflictError, 409),
    (ConsistencyError, 409),
)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError):
    status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    body = {"error": exc.code, "detail": str(exc)}
    if isinstance(exc, OrphanedTransferLeg):
        body["transfer_id"] = exc.transfer_id
        body["transaction_id"] = exc.transaction_id
    if status >= 500:
        logging.exception(f"Unhandled ledger error on {request.url.path}")
    return JSONResponse(status_code=status, content=body)


@app.exception_handler(IntegrityError)
def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning(f"integrity_error: path={request.url.path} error={exc.orig}")
    return JSONResponse(
        status_code=409,
        content={"error": "conflict", "detail": "Operation violates a store constraint"},
    )


def account_out(account: Account, balance=None) -> dict[str, object]:
    data = {
        "id": account.id,
        "name": account.name,
        "currency": account.currency,
        "initial_balance": account.initial_balance,
    }
    if balance is not None:
        data["current_balance"] = balance
    return data


def category_out(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "parent_id": category.parent_id,
    }


def payee_out(payee: Payee) -> dict[str, object]:
    return {
        "id": payee.id,
        "name": payee.name,
        "default_category_id": payee.default_category_id,
        "default_payment_type": payee.default_payment_type,
    }


def transaction_out(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "account_name": txn.account.name if txn.account else None,
        "date": txn.date.isoformat(),
        "payee": txn.payee,
        "amount": txn.amount,
        "category_id": txn.category_id,
        "category_name": txn.category.name if txn.category else None,
        "payment_type": txn.payment_type,
        "memo": txn.memo,
        "transfer_id": txn.transfer_id,
        "exported": txn.exported,
        "export_manifest_id": txn.export_manifest_id,
    }


def manifest_out(manifest: ExportManifest) -> dict[str, object]:
    return {
        "id": manifest.id,
        "timestamp": manifest.timestamp.isoformat(),
        "filename": manifest.filename,
        "count": manifest.count,
    }


@app.get("/api/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


# Accounts


@app.get("/api/accounts")
def list_accounts(db: Session = Depends(get_db)):
    return AccountService(db).list_with_balances()


@app.post("/api/accounts", status_code=201)
def create_account(payload: AccountIn, db: Session = Depends(get_db)):
    account = AccountService(db).create(payload)
    return account_out(account, account.initial_balance)


@app.post("/api/accounts/rename-currency")
def rename_currency(payload: CurrencyRenameIn, db: Session = Depends(get_db)):
    changed = AccountService(db).rename_currency(payload.old_code, payload.new_code)
    return {"changed": changed}


@app.get("/api/accounts/{account_id}")
def get_account(account_id: int, db: Session = Depends(get_db)):
    service = AccountService(db)
    return account_out(service.get(account_id), service.balance(account_id))


@app.put("/api/accounts/{account_id}")
def update_account(account_id: int, payload: AccountUpdate, db: Session = Depends(get_db)):
    service = AccountService(db)
    account = service.update(account_id, payload)
    return account_out(account, service.balance(account_id))


@app.delete("/api/accounts/{account_id}", status_code=204)
def delete_account(account_id: int, db: Session = Depends(get_db)):
    AccountService(db).delete(account_id)
    return Response(status_code=204)


# Categories


@app.get("/api/categories")
def category_tree(db: Session = Depends(get_db)):
    return CategoryService(db).tree()


@app.get("/api/categories/flat")
def list_categories(db: Session = Depends(get_db)):
    return [category_out(cat) for cat in CategoryService(db).list_all()]


@app.get("/api/categories/export")
def export_categories(db: Session = Depends(get_db)):
    content = CategoryService(db).export_csv()
    return PlainTextResponse(
        content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="categories.csv"'},
    )


@app.post("/api/categories/import")
def import_categories(csv_data: str = Body(..., embed=True), db: Session = Depends(get_db)):
    return {"count": CategoryService(db).import_csv(csv_data)}


@app.post("/api/categories", status_code=201)
def create_category(payload: CategoryIn, db: Session = Depends(get_db)):
    return category_out(CategoryService(db).create(payload))


@app.put("/api/categories/{category_id}")
def update_category(
    category_id: int, payload: CategoryUpdate, db: Session = Depends(get_db)
):
    return category_out(CategoryService(db).update(category_id, payload))


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(category_id: int, db: Session = Depends(get_db)):
    CategoryService(db).delete(category_id)
    return Response(status_code=204)


# Payees


@app.get("/api/payees")
def list_payees(db: Session = Depends(get_db)):
    return PayeeService(db).list_with_stats()


@app.get("/api/payees/export")
def export_payees(db: Session = Depends(get_db)):
    content = PayeeService(db).export_csv()
    return PlainTextResponse(
        content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="payees.csv"'},
    )


@app.post("/api/payees/import")
def import_payees(payload: PayeeImportIn, db: Session = Depends(get_db)):
    count = PayeeService(db).import_csv(payload.csv_data, payload.skip_duplicates)
    return {"count": count}


@app.post("/api/payees/import-check")
def check_payee_duplicates(payload: PayeeDuplicateCheckIn, db: Session = Depends(get_db)):
    duplicates = DuplicateDetectionService(db).check_payees(payload.candidates)
    return {"duplicates": [d.model_dump() for d in duplicates]}


@app.post("/api/payees", status_code=201)
def create_payee(payload: PayeeIn, db: Session = Depends(get_db)):
    return payee_out(PayeeService(db).create(payload))


@app.put("/api/payees/{payee_id}")
def update_payee(payee_id: int, payload: PayeeUpdate, db: Session = Depends(get_db)):
    return payee_out(PayeeService(db).update(payee_id, payload))


@app.delete("/api/payees/{payee_id}", status_code=204)
def delete_payee(payee_id: int, db: Session = Depends(get_db)):
    PayeeService(db).delete(payee_id)
    return Response(status_code=204)


# Transactions


@app.get("/api/transactions")
def list_transactions(
    account_id: Optional[int] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    db: Session = Depends(get_db),
):
    filters = TransactionFilters(account_id=account_id, date_from=date_from, date_to=date_to)
    return [transaction_out(txn) for txn in TransactionService(db).list(filters)]


@app.post("/api/transactions", status_code=201)
def create_transaction(payload: TransactionIn, db: Session = Depends(get_db)):
    result = TransactionService(db).create(payload)
    if result.transfer_id:
        return {"transfer_id": result.transfer_id}
    return {"id": result.id}


@app.get("/api/transactions/integrity")
def transfer_integrity(db: Session = Depends(get_db)):
    issues = TransactionService(db).transfer_integrity()
    return {
        "ok": not issues,
        "issues": [
            {
                "transfer_id": issue.transfer_id,
                "problem": issue.problem,
                "transaction_ids": issue.transaction_ids,
            }
            for issue in issues
        ],
    }


@app.post("/api/transactions/import-check")
def check_transaction_duplicates(payload: DuplicateCheckIn, db: Session = Depends(get_db)):
    duplicates = DuplicateDetectionService(db).check_transactions(
        payload.candidates, payload.date_format
    )
    return {"duplicates": [d.model_dump() for d in duplicates]}


@app.post("/api/transactions/import/preview")
def preview_import(
    csv_data: str = Body(..., embed=True),
    date_format: Optional[str] = Body(None, embed=True),
    db: Session = Depends(get_db),
):
    rows, errors = ImportService(db).preview(csv_data, date_format)
    return {"rows": rows, "errors": errors}


@app.post("/api/transactions/import")
def import_transactions(payload: TransactionImportIn, db: Session = Depends(get_db)):
    result = ImportService(db).import_csv(payload)
    return {
        "count": result.count,
        "skipped_duplicates": result.skipped_duplicates,
        "errors": result.errors,
    }


@app.post("/api/transactions/export")
def export_transactions(payload: ExportRequest, db: Session = Depends(get_db)):
    exporter = ExportService(db)
    manifests = ExportManifestService(db)
    if payload.grouped:
        groups = exporter.export_grouped(payload)
        recorded = manifests.record_grouped(groups) if payload.record else {}
        return {
            str(account_id): {
                "name": group.name,
                "content": group.content,
                "count": group.count,
                "transaction_ids": group.transaction_ids,
                "manifest_id": recorded[account_id].id if account_id in recorded else None,
            }
            for account_id, group in groups.items()
        }

    result = exporter.export(payload)
    filename = payload.filename or f"transactions_{date.today().isoformat()}.csv"
    headers = {"Content-Disposition": f'attachment; filename="{safe_filename(filename)}"'}
    if payload.record:
        manifest = manifests.record_export(result, filename)
        headers["X-Export-Manifest-Id"] = str(manifest.id)
    return PlainTextResponse(result.content, media_type="text/csv", headers=headers)


@app.get("/api/transactions/{transaction_id}")
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return transaction_out(TransactionService(db).get(transaction_id))


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int, payload: TransactionUpdate, db: Session = Depends(get_db)
):
    return transaction_out(TransactionService(db).update(transaction_id, payload))


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return {"deleted": TransactionService(db).delete(transaction_id)}


# Export log


@app.get("/api/export-log")
def list_manifests(db: Session = Depends(get_db)):
    return [manifest_out(m) for m in ExportManifestService(db).list_all()]


@app.post("/api/export-log", status_code=201)
def record_manifest(payload: ManifestIn, db: Session = Depends(get_db)):
    return manifest_out(ExportManifestService(db).record(payload))


@app.delete("/api/export-log")
def clear_manifests(db: Session = Depends(get_db)):
    return {"cleared": ExportManifestService(db).delete_all()}


@app.get("/api/export-log/{manifest_id}/preview")
def preview_manifest(manifest_id: int, db: Session = Depends(get_db)):
    manifest = ExportManifestService(db).get(manifest_id)
    return {**manifest_out(manifest), "content": manifest.content}


@app.get("/api/export-log/{manifest_id}/download")
def download_manifest(manifest_id: int, db: Session = Depends(get_db)):
    manifest = ExportManifestService(db).get(manifest_id)
    filename = safe_filename(manifest.filename) or f"export-{manifest.id}.csv"
    return PlainTextResponse(
        manifest.content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.delete("/api/export-log/{manifest_id}")
def delete_manifest(manifest_id: int, db: Session = Depends(get_db)):
    return {"cleared": ExportManifestService(db).delete(manifest_id)}


# Settings and system


@app.get("/api/settings")
def get_app_settings(db: Session = Depends(get_db)):
    return SettingsService(db).all()


@app.get("/api/settings/{key}")
def get_app_setting(key: str, db: Session = Depends(get_db)):
    return {"key": key, "value": SettingsService(db).get(key)}


@app.put("/api/settings/{key}")
def set_app_setting(key: str, payload: SettingIn, db: Session = Depends(get_db)):
    return {"key": key, "value": SettingsService(db).set(key, payload.value)}


@app.post("/api/system/reset")
def reset_system(confirm: bool = Body(False, embed=True), db: Session = Depends(get_db)):
    if not confirm:
        raise ValidationError("Reset requires confirm=true")
    SystemService(db).reset()
    return {"status": "reset"}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
