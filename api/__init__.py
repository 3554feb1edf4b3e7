"""
HTTP / WebSocket 層

Router 只負責把請求轉成 manager 呼叫、把業務異常轉成 HTTP status，
並在 commit 之後推播；業務規則一律在 core/ 裡。
"""
