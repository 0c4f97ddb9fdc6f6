import typing

UserId = typing.NewType("UserId", str)
AdminId = typing.NewType("AdminId", str)

CohortId = typing.NewType("CohortId", str)
WeekId = typing.NewType("WeekId", str)
ContentUnitId = typing.NewType("ContentUnitId", str)
LedgerEntryId = typing.NewType("LedgerEntryId", str)
IsoTimestamp = typing.NewType("IsoTimestamp", str)
