# Static TourAPI lookup tables exposed through /api/presets.

CONTENT_TYPES = {
    12: "Tourist spot",
    14: "Cultural facility",
    15: "Festival / performance / event",
    25: "Travel course",
    28: "Leisure sports",
    32: "Accommodation",
    38: "Shopping",
    39: "Restaurant",
}

# Radius options in meters
RADIUS_OPTIONS = {
    1000: "1km",
    5000: "5km",
    10000: "10km",
    20000: "20km",
}

# TourAPI caps locationBasedList2 radius at 20km
MAX_RADIUS_M = 20000

MAJOR_CITIES = [
    ("Seoul", 37.5665, 126.9780),
    ("Busan", 35.1796, 129.0756),
    ("Jeju", 33.4996, 126.5312),
    ("Gangneung", 37.7519, 128.8761),
    ("Gyeongju", 35.8563, 129.2245),
]

# TourAPI "arrange" options
ARRANGE_MODIFIED = "C"
ARRANGE_DISTANCE = "E"

# resultCode reported by TourAPI for a successful call
RESULT_CODE_OK = "0000"
