from __future__ import annotations

import os
import unittest
import uuid

from app import create_app
from app.extensions import db
from app.integrations.payments.mock_provider import MockPaymentsProvider
from app.models import BankingSubaccount, PlatformEvent, User
from app.services.banking_service import (
    decrypt_banking_details,
    mask_account_number,
    setup_subaccount,
    update_subaccount,
)
from app.services.container import override
from app.services.errors import ErrorKind, WorkflowError
from app.utils.crypto import BankingCipher, BankingCipherError
from app.utils.jwt_utils import create_access_token


class BankingDetailsTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._db_env = {k: os.environ.get(k) for k in ("SQLALCHEMY_DATABASE_URI", "DATABASE_URL")}
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        os.environ["DATABASE_URL"] = "sqlite:///:memory:"
        cls.app = create_app()
        cls.app.config.update(TESTING=True, BANKING_ENCRYPTION_KEY="unit-test-banking-master-key")
        with cls.app.app_context():
            db.create_all()
            override(payments=MockPaymentsProvider())
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._db_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def _seller(self) -> User:
        user = User(name="Seller", email=f"seller-{uuid.uuid4().hex[:10]}@rebooked.test", role="seller")
        db.session.add(user)
        db.session.commit()
        return user

    @staticmethod
    def _details(**overrides) -> dict:
        out = {
            "business_name": "Campus Books",
            "bank_code": "250655",
            "bank_name": "First National Bank",
            "account_number": "62012345678",
            "email": "payouts@rebooked.test",
        }
        out.update(overrides)
        return out

    def test_mask_account_number(self):
        self.assertEqual(mask_account_number("62012345678"), "*******5678")
        self.assertEqual(mask_account_number("123"), "123")
        self.assertEqual(mask_account_number(None), "")

    def test_ciphertext_is_not_plaintext_and_decrypts(self):
        with self.app.app_context():
            cipher = BankingCipher.for_new_record()
            token = cipher.encrypt("62012345678")
            self.assertNotIn("62012345678", token)
            self.assertEqual(BankingCipher(cipher.salt, expected_key_hash=cipher.key_hash).decrypt(token), "62012345678")

    def test_wrong_master_key_is_detected(self):
        with self.app.app_context():
            cipher = BankingCipher.for_new_record()
            recorded_hash = cipher.key_hash
            self.app.config["BANKING_ENCRYPTION_KEY"] = "another-master-key"
            try:
                with self.assertRaises(BankingCipherError):
                    BankingCipher(cipher.salt, expected_key_hash=recorded_hash)
            finally:
                self.app.config["BANKING_ENCRYPTION_KEY"] = "unit-test-banking-master-key"

    def test_setup_then_decrypt_round_trip(self):
        with self.app.app_context():
            seller = self._seller()
            row = setup_subaccount(seller.id, self._details())
            self.assertTrue(row.subaccount_code.startswith("ACCT_mock"))
            self.assertTrue(row.recipient_code.startswith("RCP_mock"))
            self.assertNotEqual(row.encrypted_account_number, "62012345678")

            details = decrypt_banking_details(seller.id)
            self.assertEqual(details["account_number"], "62012345678")
            self.assertEqual(details["bank_code"], "250655")
            self.assertEqual(details["bank_name"], "First National Bank")
            self.assertEqual(details["subaccount_code"], row.subaccount_code)
            self.assertEqual(
                PlatformEvent.query.filter_by(event_type="banking_subaccount_created", subject_id=str(row.id)).count(),
                1,
            )

    def test_update_reseals_with_fresh_salt(self):
        with self.app.app_context():
            seller = self._seller()
            row = setup_subaccount(seller.id, self._details())
            first_salt = row.encryption_salt
            first_recipient = row.recipient_code

            updated = update_subaccount(seller.id, {"account_number": "62098765432"})
            self.assertEqual(updated.id, row.id)
            self.assertNotEqual(updated.encryption_salt, first_salt)
            self.assertNotEqual(updated.recipient_code, first_recipient)
            self.assertEqual(decrypt_banking_details(seller.id)["account_number"], "62098765432")
            self.assertEqual(decrypt_banking_details(seller.id)["bank_name"], "First National Bank")

    def test_invalid_account_number_rejected(self):
        with self.app.app_context():
            seller = self._seller()
            with self.assertRaises(WorkflowError) as ctx:
                setup_subaccount(seller.id, self._details(account_number="12ab"))
            self.assertEqual(ctx.exception.kind, ErrorKind.VALIDATION_ERROR)
            self.assertEqual(BankingSubaccount.query.filter_by(user_id=seller.id).count(), 0)

    def test_http_flow_is_owner_only(self):
        with self.app.app_context():
            owner = self._seller()
            other = self._seller()
            owner_token = create_access_token(owner.id)
            other_token = create_access_token(other.id)

        created = self.client.post(
            "/api/banking/subaccount",
            json=self._details(),
            headers={"Authorization": f"Bearer {owner_token}"},
        )
        self.assertEqual(created.status_code, 201)
        summary = (created.get_json() or {}).get("subaccount") or {}
        self.assertEqual(summary.get("account_number_masked"), "*******5678")
        self.assertNotIn("encrypted_account_number", summary)

        mine = self.client.post("/functions/v1/decrypt-banking-details", headers={"Authorization": f"Bearer {owner_token}"})
        self.assertEqual(mine.status_code, 200)
        self.assertEqual(((mine.get_json() or {}).get("data") or {}).get("account_number"), "62012345678")

        theirs = self.client.post("/functions/v1/decrypt-banking-details", headers={"Authorization": f"Bearer {other_token}"})
        self.assertEqual(theirs.status_code, 404)

        anonymous = self.client.post("/functions/v1/decrypt-banking-details")
        self.assertEqual(anonymous.status_code, 401)

        removed = self.client.delete("/api/banking/subaccount", headers={"Authorization": f"Bearer {owner_token}"})
        self.assertEqual(removed.status_code, 200)
        after = self.client.get("/api/banking/subaccount", headers={"Authorization": f"Bearer {owner_token}"})
        self.assertIsNone((after.get_json() or {}).get("subaccount"))


if __name__ == "__main__":
    unittest.main()
