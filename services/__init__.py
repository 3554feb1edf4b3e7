"""
服務層

這個 package 包含純計算邏輯，不負責狀態轉換：
- PricingService：報價計算
- LateFeeService：逾時分鐘數、逾時費與系統備註
- RentalService：可租借類型、年齡、會員狀態、check-in 結束時間
- SnapshotService：Lane Session snapshot 投影
- WaitlistService：候補順位與預估時間
"""
