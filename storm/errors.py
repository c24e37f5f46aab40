"""
Typed errors surfaced to clients as {"code", "message"} bodies.

Admission errors are detected locally before any remote call. Remote
synchronization errors mean the provisioning service did not acknowledge
the change and local state was left untouched. Migration errors cover the
transfer requests and the completion callback.
"""


class StormError(Exception):
    code = "storm_error"
    status_code = 500
    default_message = "Storm operation failed"

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def as_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class Unauthenticated(StormError):
    code = "unauthenticated"
    status_code = 401
    default_message = "Requester account could not be resolved"


# ============================================================================
# ADMISSION
# ============================================================================

class AdmissionError(StormError):
    status_code = 400


class AccountNotFound(AdmissionError):
    code = "account_not_found"
    default_message = "Target account does not exist"


class UnpermittedAccount(AdmissionError):
    code = "unpermitted_account"
    default_message = "Requester is not permitted to manage this account"


class UnpermittedEnterprise(AdmissionError):
    code = "unpermitted_enterprise"
    default_message = "Storm is not enabled for this enterprise"


class StormAccountCountReached(AdmissionError):
    code = "storm_user_count_reached"
    default_message = "The enterprise reached its storm account limit"


class AlreadyExists(AdmissionError):
    code = "already_exists"
    default_message = "A storm account already exists for this account"


class InvalidBandrate(AdmissionError):
    code = "invalid_bandrate"
    default_message = "bandrate must be a non-negative integer"


class StormUserNotFound(AdmissionError):
    code = "storm_user_not_found"
    default_message = "The account has no storm account"


class StormServerNotFound(AdmissionError):
    code = "storm_server_not_found"
    default_message = "No storm server is available"


# ============================================================================
# REMOTE SYNCHRONIZATION
# ============================================================================

class RemoteSyncError(StormError):
    status_code = 500


class CreateStormUserError(RemoteSyncError):
    code = "create_storm_user_error"
    default_message = "Storm server did not create the user"


class DestroyStormUserError(RemoteSyncError):
    code = "destroy_storm_user_error"
    default_message = "Storm server did not destroy the user"


class UpdateStormUserError(RemoteSyncError):
    code = "update_storm_user_error"
    default_message = "Storm server did not update the user"


class BulkUpdateStormUsersError(RemoteSyncError):
    code = "bulk_update_storm_users_error"
    default_message = "Storm server did not update the enterprise users"


class MoveToStormError(RemoteSyncError):
    code = "move_to_storm_error"
    default_message = "Storm server did not accept the transfer"


# ============================================================================
# MIGRATION
# ============================================================================

class MigrationError(StormError):
    status_code = 400


class InvalidCallbackToken(MigrationError):
    code = "invalid_callback_token"
    status_code = 401
    default_message = "Callback token is missing or invalid"


class InvalidAction(MigrationError):
    code = "invalid_action"
    default_message = "Unknown transfer action"


class InvalidJobId(MigrationError):
    code = "invalid_jid"
    default_message = "Job id is blank or malformed"


class InvalidResourceId(MigrationError):
    code = "invalid_jid"
    default_message = "Resource id is malformed"


class InvalidUser(MigrationError):
    code = "invalid_user"
    default_message = "user is required"


class UserNotFound(MigrationError):
    code = "user_not_found"
    default_message = "Storm user does not exist"


class JobNotFound(MigrationError):
    code = "job_not_found"
    default_message = "Transfer job does not exist or was already completed"


class InvalidName(MigrationError):
    code = "invalid_name"
    default_message = "name must be a single path component"


class InvalidPath(MigrationError):
    code = "invalid_path"
    default_message = "path must be a relative path inside the staging root"


class StormServerError(MigrationError):
    code = "storm_server_error"
    default_message = "Storm server reported a transfer error"


class UploadItemNotFound(MigrationError):
    code = "upload_item_not_found"
    default_message = "Staged item does not exist"


class UploadDestinationNotFound(MigrationError):
    code = "upload_destination_not_found"
    default_message = "Upload destination does not exist"


class UploadDestinationNotFolder(MigrationError):
    code = "upload_destination_not_folder"
    default_message = "Upload destination is not a folder"


class ItemAlreadyExists(MigrationError):
    code = "item_already_exists"
    status_code = 409
    default_message = "An item with this name already exists in the destination"


class DownloadItemNotFound(MigrationError):
    code = "download_item_not_found"
    default_message = "Download item does not exist"


class DownloadItemNotFile(MigrationError):
    code = "download_item_not_file"
    default_message = "Download item is not a file"


class DownloadDestinationNotFound(MigrationError):
    code = "download_destination_not_found"
    default_message = "Download destination does not exist"
