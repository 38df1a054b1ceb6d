from teleconsulta.signaling.base import SignalingStore, Subscription


def create_signaling_store(settings, firebase_service=None) -> SignalingStore:
    """Build the store selected by ``SIGNALING_BACKEND``."""
    if settings.SIGNALING_BACKEND == "sql":
        from teleconsulta.db.session import build_engine, build_session_factory, Base
        from teleconsulta.signaling.sql_store import SqlSignalingStore
        import teleconsulta.models  # noqa: F401 - registers tables on Base

        engine = build_engine(settings.DATABASE_URL)
        Base.metadata.create_all(bind=engine)
        return SqlSignalingStore(build_session_factory(engine), poll_interval=settings.SQL_POLL_INTERVAL_SECONDS)

    from teleconsulta.signaling.firestore_store import FirestoreSignalingStore

    if firebase_service is None:
        raise ValueError("The firestore signaling backend needs an initialized FirebaseService")
    return FirestoreSignalingStore(firebase_service.firestore, collection=settings.FIRESTORE_ROOMS_COLLECTION)


__all__ = ["SignalingStore", "Subscription", "create_signaling_store"]
