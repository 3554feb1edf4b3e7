"""
核心業務邏輯層

這個 package 包含所有核心業務邏輯，包括：
- 狀態機：集中管理 Lane Session 與退房請求的狀態轉換
- Manager：Lane Session、付款意圖、退房請求的完整生命週期
- Allocation / Waitlist：資源分配與候補名單
- Locks：並發控制工具
- Broadcaster：commit 之後推播 snapshot
"""
