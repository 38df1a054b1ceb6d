import firebase_admin
from firebase_admin import credentials, firestore
import os

from teleconsulta.utils.logger import safe_print


class FirebaseService:
    """Owns the Firebase Admin app used for Firestore signaling and appointment lookups."""

    def __init__(self, app_name: str = "[DEFAULT]"):
        self.app_name = app_name
        self.app = self._initialize_firebase()
        self._firestore = None

    def _service_account_config(self) -> dict:
        private_key = os.getenv("FIREBASE_PRIVATE_KEY")
        if private_key:
            private_key = private_key.replace('\\n', '\n')

        firebase_config = {
            "type": "service_account",
            "project_id": os.getenv("FIREBASE_PROJECT_ID"),
            "private_key_id": os.getenv("FIREBASE_PRIVATE_KEY_ID"),
            "private_key": private_key,
            "client_email": os.getenv("FIREBASE_CLIENT_EMAIL"),
            "client_id": os.getenv("FIREBASE_CLIENT_ID"),
            "auth_uri": os.getenv("FIREBASE_AUTH_URI"),
            "token_uri": os.getenv("FIREBASE_TOKEN_URI"),
            "auth_provider_x509_cert_url": os.getenv("FIREBASE_AUTH_PROVIDER_X509_CERT_URL"),
            "client_x509_cert_url": os.getenv("FIREBASE_CLIENT_X509_CERT_URL")
        }
        # Remove None values
        return {k: v for k, v in firebase_config.items() if v is not None}

    def _initialize_firebase(self):
        """Initialize Firebase Admin SDK"""
        try:
            return firebase_admin.get_app(self.app_name)
        except ValueError:
            pass

        if os.getenv("FIREBASE_PRIVATE_KEY") and os.getenv("FIREBASE_CLIENT_EMAIL"):
            cred = credentials.Certificate(self._service_account_config())
            safe_print("Initializing Firebase with service account credentials")
            return firebase_admin.initialize_app(cred, name=self.app_name)

        # Default credentials (GOOGLE_APPLICATION_CREDENTIALS, GCP metadata or the emulator)
        options = {}
        if os.getenv("FIREBASE_PROJECT_ID"):
            options["projectId"] = os.getenv("FIREBASE_PROJECT_ID")
        safe_print("Initializing Firebase with application default credentials")
        return firebase_admin.initialize_app(options=options or None, name=self.app_name)

    @property
    def firestore(self):
        """Synchronous Firestore client bound to this app."""
        if self._firestore is None:
            self._firestore = firestore.client(app=self.app)
        return self._firestore
