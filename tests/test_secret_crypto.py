import os
import unittest
from unittest.mock import patch

from utils.secret_crypto import decrypt_secret, encrypt_secret, encryption_enabled, is_encrypted


class SecretCryptoTests(unittest.TestCase):
    def test_round_trip_with_passphrase_key(self):
        with patch.dict(os.environ, {"CRM_SECRET_ENC_KEY": "passphrase"}):
            sealed = encrypt_secret("whsec")
            self.assertTrue(is_encrypted(sealed))
            self.assertNotIn("whsec", sealed)
            self.assertEqual(decrypt_secret(sealed), "whsec")

    def test_nonce_makes_ciphertexts_differ(self):
        with patch.dict(os.environ, {"CRM_SECRET_ENC_KEY": "passphrase"}):
            self.assertNotEqual(encrypt_secret("whsec"), encrypt_secret("whsec"))

    def test_plain_values_pass_through(self):
        self.assertEqual(decrypt_secret("legacy-plain"), "legacy-plain")

    def test_missing_key(self):
        with patch.dict(os.environ, {"CRM_SECRET_ENC_KEY": ""}):
            self.assertFalse(encryption_enabled())
            with self.assertRaises(ValueError):
                encrypt_secret("whsec")

    def test_wrong_key_is_rejected(self):
        with patch.dict(os.environ, {"CRM_SECRET_ENC_KEY": "first"}):
            sealed = encrypt_secret("whsec")
        with patch.dict(os.environ, {"CRM_SECRET_ENC_KEY": "second"}):
            with self.assertRaises(ValueError):
                decrypt_secret(sealed)


if __name__ == "__main__":
    unittest.main()
