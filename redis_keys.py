REDIS_ROOM_SEQ_KEY = "rooms:seq" # counter used to assign room ids
REDIS_ROOM_INDEX_KEY = "rooms:index" # sorted set of room ids, scored by id
REDIS_META_KEY = "room:meta:{slug}" # room id - room hash
REDIS_MESSAGES_KEY = "room:messages:{slug}" # room id - sorted set of message records
REDIS_CHANGE_CHANNEL = "changes:{table}" # table - insert events for every row
REDIS_FILTERED_CHANGE_CHANNEL = "changes:{table}:{column}=eq.{value}" # insert events for one column value

# **Example `room:meta:{id}` hash fields**
# - `id` = `{roomId}`
# - `name` = room name
# - `created_at` = ISO timestamp

# **Example `room:messages:{id}` member**
# - JSON record `{"id", "room_id", "author", "body", "created_at"}`
# - score = `created_at` in epoch milliseconds


def change_channel(table: str, filters: dict = None) -> str:
    """Pub/sub channel carrying insert events for a table, optionally narrowed to one column value."""
    if not filters:
        return REDIS_CHANGE_CHANNEL.format(table=table)
    if len(filters) != 1:
        raise ValueError(f"Exactly one filter column is supported, got {sorted(filters)}")
    (column, value), = filters.items()
    return REDIS_FILTERED_CHANGE_CHANNEL.format(table=table, column=column, value=value)
