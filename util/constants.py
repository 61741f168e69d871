class InternalURIs:
    API = "/api"
    V1 = API + "/v1"
    JOBS = V1 + "/jobs"
    JOB = JOBS + "/{job_id}"
    JOB_CANCEL = JOB + "/cancel"
    JOB_RETRY = JOB + "/retry"
    JOB_EVENTS = JOB + "/events"
    LIBRARY = V1 + "/library"
    LIBRARY_ITEM = LIBRARY + "/{ref}"
    LIBRARY_STREAM = LIBRARY_ITEM + "/stream"


class ExternalURIs:
    YOUTUBE_WATCH = "https://www.youtube.com/watch?v="


class MimeTypes:
    NDJSON = "application/x-ndjson"
    DEFAULT_AUDIO = "audio/webm"
    DRIVE_FOLDER = "application/vnd.google-apps.folder"
