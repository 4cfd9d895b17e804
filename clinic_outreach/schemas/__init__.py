from clinic_outreach.schemas.waitlist import (
    SlotRequest, AddWaitlistRequest, RemoveWaitlistRequest, MatchRequest, NotifyRequest,
    RespondRequest, AutoFillRequest, WaitlistEntryResponse, WaitlistNotificationResponse,
    WaitlistListResponse, WaitlistStatsResponse,
)
from clinic_outreach.schemas.recall import (
    TargetCriteria, DayRange, CreateCampaignRequest, UpdateCampaignRequest, CampaignResponse,
    CampaignTemplateResponse, AddRecallPatientRequest, RecordContactRequest,
    ContactResponseRequest, RecallResponseRequest, ScheduleRecallRequest, DismissRecallRequest,
    ProcessOutreachRequest, RecallPatientResponse, ContactLogResponse,
)
