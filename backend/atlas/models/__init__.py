# Models package
from atlas.models.user import User
from atlas.models.project import Project
from atlas.models.api_key import ApiKey
from atlas.models.build import Build, BuildStatus
from atlas.models.instance import Instance, InstanceStatus
from atlas.models.quota import UserQuota
from atlas.models.lifecycle_event import LifecycleEventRecord
from atlas.models.usage import UsageLedgerEntry
