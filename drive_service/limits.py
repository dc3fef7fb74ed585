# Fixed pipeline constants. Chunks stay under the 100 MB request ceiling of the
# reverse proxy in front of the service.
MIB = 1024 * 1024

CHUNK_SIZE_BYTES = 50 * MIB
MAX_FILE_SIZE_BYTES = 3 * 1024 * MIB
STALE_UPLOAD_TTL_SECONDS = 60 * 60
REAPER_INTERVAL_SECONDS = 10 * 60
COPY_BUFFER_BYTES = 1 * MIB
RECENT_FILES_LIMIT = 50
MAX_TOTAL_CHUNKS = 10_000
PREVIEW_MAX_BYTES = 1 * MIB
THUMBNAIL_CACHE_SECONDS = 24 * 60 * 60
PREVIEW_MIME_PREFIXES = ("text/", "application/json", "application/javascript", "application/xml")
PREVIEW_EXTENSIONS = frozenset(
    {
        ".txt", ".md", ".json", ".js", ".ts", ".css", ".html", ".xml", ".csv", ".log", ".ini", ".cfg", ".conf",
        ".sh", ".bat", ".py", ".java", ".c", ".cpp", ".h", ".hpp", ".sql", ".yml", ".yaml", ".env", ".gitignore",
    }
)
