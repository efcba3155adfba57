"""Per-user session: which job /status, /results and /cancel refer to."""
import logging

log = logging.getLogger(__name__)

USERS = "users"


class SessionIndex:
    def __init__(self, store):
        self.store = store

    def set_current_job(self, user_id, job_id):
        """Point the user at job_id, replacing any previous job reference."""
        with self.store.acquire(USERS) as h:
            h.set(str(user_id), {"current_job": job_id})
            h.save()

    def get_current_job(self, user_id):
        with self.store.acquire(USERS) as h:
            record = h.get(str(user_id)) or {}
        return record.get("current_job")

    def clear_current_job(self, user_id):
        with self.store.acquire(USERS) as h:
            if h.get(str(user_id)) is None:
                return
            h.delete(str(user_id))
            h.save()
        log.debug(f"Cleared session for user {user_id}")
