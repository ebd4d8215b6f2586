REDIS_SNAPSHOT_KEY = "room:snapshot:{code}" # room code - JSON snapshot document
REDIS_EXPIRY_INDEX = "rooms:expiry" # sorted set: room code scored by expiry epoch seconds

# **Example `room:snapshot:{code}` document**
# - `code`, `title`, `creatorName`
# - `startDate`, `endDate`, `dayStart`, `dayEnd`, `slotMinutes`, `timeZone`
# - `createdAt`, `updatedAt`, `expiresAt` = ISO timestamps (UTC, `Z`)
# - `ownerMemberId`
# - `slots` = list of minute-since-epoch strings
# - `members` = list of {id, name, joinedAt, lastSeenAt, unavailable, confirmedAt, pinSalt, pinHash}
