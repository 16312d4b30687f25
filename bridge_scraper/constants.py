"""Target-site URLs, CSS selectors, page bindings and field names."""

# ── Vehicle monitoring site (Venus) ──────────────────────────────────────────

VENUS_BASE = "https://theearth-np.com"
VENUS_LOGIN_URL = f"{VENUS_BASE}/F-OES1010[Login].aspx?mode=timeout"
VENUS_MAIN_URL = f"{VENUS_BASE}/WebVenus/F-AAV0001[VenusMain].aspx"
VENUS_COOKIE_DOMAIN = "theearth-np.com"
VENUS_LOGIN_URL_PATTERNS = ["Login", "OES1010"]
VENUS_DVR_BASE = "http://theearth-np.com/dvrData"

VENUS_SELECTORS = {
    # Login page
    "company_id": "#txtID2",
    "user_name": "#txtID1",
    "password": "#txtPass",
    "login_button": "#imgLogin",
    "popup": "#popup_1",
    # Post-login home button; doubles as the logged-in marker
    "home_button": "#Button1st_7",
    # Main page
    "vehicle_grid": "#igGrid-VenusMain-VehicleList",
    "loading": (
        '#pMsg_wait, [id*="pMsg_wait"], [id*="pMsg"], [class*="pMsg"], '
        '[id*="loading"], [id*="Loading"], .loading-message, .wait-message'
    ),
}

# ── Page bindings ────────────────────────────────────────────────────────────

VENUS_SERVICE = "VenusBridgeService"
VEHICLE_STATE_BINDING = f"{VENUS_SERVICE}.VehicleStateTableForBranchEx"
DVR_NOTIFICATION_BINDING = f"{VENUS_SERVICE}.Monitoring_DvrNotification2"
DVR_FILE_LIST_BINDING = f"{VENUS_SERVICE}.Request_DvrFileList"
DVR_FILE_TRANSFER_BINDING = f"{VENUS_SERVICE}.Request_DvrFileTransfer_MultiTarget"

# "fieldName,dir,pageIndex,pageSize": no sort, first page of 100
DVR_NOTIFICATION_SORT = ",,0,100"

DEFAULT_BRANCH_ID = "00000000"
DEFAULT_FILTER_ID = "0"

# ── Vehicle record fields ────────────────────────────────────────────────────

VEHICLE_FIELDS = {
    "vehicle_cd": "VehicleCD",
    "vehicle_name": "VehicleName",
    "status": "Status",
}

# ── ETC usage statement site ─────────────────────────────────────────────────

ETC_BASE = "https://www.etc-meisai.jp/"
ETC_LOGIN_FUNC_CODE = "funccode=1013000000"
ETC_LOGIN_URL_PATTERNS = ["funccode=1013000000"]

ETC_SELECTORS = {
    "login_link": f"a[href*='{ETC_LOGIN_FUNC_CODE}']",
    "user_id": "input[name='risLoginId']",
    "password": "input[name='risPassword']",
    "login_button": "input[type='button'][value='ログイン']",
    "all_option": "input[name='sokoKbn'][value='0']",
    "save_button": "input[name='focusTarget_Save']",
    "search_button": "input[name='focusTarget']",
}

ETC_SEARCH_CONDITIONS_TEXT = "検索条件の指定"
ETC_STATEMENT_TEXT = "明細"
ETC_CSV_TEXTS = ["CSV", "ＣＳＶ"]
ETC_PAGE_FUNCTIONS = ["goOutput", "submitOpenPage"]
