"""
T-SQL used by the SUSDB maintenance engine.
Revision states in tbRevision: 2 = declined, 3 = superseded.
"""

REVISION_STATE_DECLINED = 2
REVISION_STATE_SUPERSEDED = 3

DELETE_DECLINED_SUPERSESSION = """
DELETE rsu
FROM tbRevisionSupersedesUpdate rsu
INNER JOIN tbRevision r ON rsu.RevisionID = r.RevisionID
WHERE r.State = 2
"""

DELETE_SUPERSEDED_SUPERSESSION_BATCH = """
DELETE TOP (?) rsu
FROM tbRevisionSupersedesUpdate rsu
INNER JOIN tbRevision r ON rsu.RevisionID = r.RevisionID
WHERE r.State = 3
"""

FRAGMENTED_INDEXES = """
SELECT
    OBJECT_NAME(ips.object_id) AS table_name,
    i.name AS index_name,
    ips.avg_fragmentation_in_percent AS fragmentation,
    ips.page_count AS page_count
FROM sys.dm_db_index_physical_stats(DB_ID(), NULL, NULL, NULL, 'LIMITED') ips
INNER JOIN sys.indexes i ON ips.object_id = i.object_id AND ips.index_id = i.index_id
WHERE ips.avg_fragmentation_in_percent >= ?
  AND ips.page_count > ?
  AND i.name IS NOT NULL
  AND OBJECT_NAME(ips.object_id) NOT LIKE 'ivw%'
ORDER BY ips.page_count DESC
"""

REBUILD_INDEX = (
    "SET DEADLOCK_PRIORITY LOW; "
    "ALTER INDEX [{index}] ON [dbo].[{table}] REBUILD WITH (ONLINE = OFF, SORT_IN_TEMPDB = ON)"
)

REORGANIZE_INDEX = (
    "SET DEADLOCK_PRIORITY LOW; "
    "ALTER INDEX [{index}] ON [dbo].[{table}] REORGANIZE"
)

UPDATE_STATISTICS = "EXEC sp_updatestats"

SHRINK_DATABASE = "SET DEADLOCK_PRIORITY LOW; DBCC SHRINKDATABASE([{database}], {percent}) WITH NO_INFOMSGS"

SPACE_USAGE = """
SELECT
    SUM(size / 128.0) AS allocated_mb,
    SUM(CAST(FILEPROPERTY(name, 'SpaceUsed') AS INT) / 128.0) AS used_mb
FROM sys.database_files
WHERE type = 0
"""

DATABASE_SIZE_GB = """
SELECT SUM(size) * 8.0 / 1024 / 1024
FROM sys.master_files
WHERE database_id = DB_ID(?)
"""

DATABASE_STATS = """
SELECT
    (SELECT COUNT(*) FROM tbRevisionSupersedesUpdate) AS supersession_records,
    (SELECT COUNT(*) FROM tbRevision WHERE State = 2) AS declined_revisions,
    (SELECT COUNT(*) FROM tbRevision WHERE State = 3) AS superseded_revisions,
    (SELECT COUNT(*) FROM tbFileOnServer WHERE ActualState = 1) AS files_present,
    (SELECT COUNT(*) FROM tbFileOnServer) AS files_total
"""

CONNECTION_PROBE = "SELECT 1"

BACKUP_DATABASE = (
    "BACKUP DATABASE [{database}] TO DISK = ? "
    "WITH INIT, CHECKSUM, STATS = 10"
)

SET_SINGLE_USER = "ALTER DATABASE [{database}] SET SINGLE_USER WITH ROLLBACK IMMEDIATE"

RESTORE_DATABASE = "RESTORE DATABASE [{database}] FROM DISK = ? WITH REPLACE, STATS = 10"

SET_MULTI_USER = "ALTER DATABASE [{database}] SET MULTI_USER"


def quote_identifier(name: str) -> str:
    """Escape a name for use inside [brackets]."""
    return name.replace(']', ']]')
